import os
import json
import copy

CODES_DIR = os.path.dirname(os.path.abspath(__file__))


def str2bool(v):
	"""
	Interpret a loosely formatted flag ("yes", "T", 1, ...) as a boolean.
	"""
	if isinstance(v, bool):
		return v
	if isinstance(v, (int, float)):
		return v != 0
	return str(v).strip().lower() in ("yes", "true", "t", "y", "1")


def merge_dicts(default, user):
	"""
	Recursively overlay `user` on top of `default` and return a new dict.
	Nested sections are merged key by key, anything else is replaced.
	"""
	merged = copy.deepcopy(default)
	for key, value in user.items():
		if isinstance(value, dict) and isinstance(merged.get(key), dict):
			merged[key] = merge_dicts(merged[key], value)
		else:
			merged[key] = copy.deepcopy(value)
	return merged


def read_default_params(default_name):
	"""
	Load the default config shipped next to the codes.
	"""
	with open(os.path.join(CODES_DIR, default_name), "r") as default_file:
		return json.load(default_file)


def read_params(path_config, default_name):
	"""
	Read a json config and complete it with the bundled defaults.

	Parameters:
		path_config (str): Path to the user's config file.
		default_name (str): File name of the default config shipped next to the codes.

	Returns:
		dict: The merged configuration.
	"""
	default = read_default_params(default_name)
	with open(path_config, "r") as config_file:
		user = json.load(config_file)
	return merge_dicts(default, user)


def resolve_path(path, wk_dir):
	"""
	Anchor a relative path to the working directory, absolute paths pass through.
	"""
	if os.path.isabs(path):
		return path
	return os.path.join(wk_dir, path)
