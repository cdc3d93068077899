class CustomizedError(Exception):
    """Base error for every condition the extraction pipeline reports to the user."""
    kind = "CustomizedError"


class SourceUnavailable(CustomizedError):
    """The run file for a job is missing or can't be opened."""
    kind = "SourceUnavailable"


class MalformedRow(CustomizedError):
    """A line of a run file can't be decoded with the active schema."""
    kind = "MalformedRow"

    def __init__(self, message, line_number=None):
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)
        self.line_number = line_number


class RunIncomplete(CustomizedError):
    """The run ended before reaching the terminal date."""
    kind = "RunIncomplete"


class DegenerateNormalization(CustomizedError):
    """A snapshot denominator (genotype mass or population) is zero."""
    kind = "DegenerateNormalization"
