"""
Marker decoding for the packed genotype index.

A genotype index is an integer in [0, 128) where bit k tells whether locus k
carries its resistant allele. Each named marker is bound to one bit, and its
index set is every genotype index with that bit set.
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np

from error_handling import CustomizedError

N_LOCI = 7
GENOTYPE_DOMAIN = 1 << N_LOCI

DEFAULT_MARKERS = {
    "c580y": 2,
    "plas": 1,
    "kaf_oz": 0,
    "mdr2": 5,
}


def marker_index_set(bit: int, domain: int = GENOTYPE_DOMAIN) -> np.ndarray:
    """Ascending genotype indices in [0, domain) whose `bit` is set."""
    if not isinstance(bit, (int, np.integer)) or bit < 0 or (1 << bit) >= domain:
        raise CustomizedError(f"Marker bit {bit} is outside the genotype domain of size {domain}")
    indices = np.arange(domain)
    return indices[(indices >> bit) & 1 == 1]


@dataclass(frozen=True)
class Marker:
    """A named resistance phenotype and the genotype indices carrying it."""
    name: str
    bit: int
    index_set: Tuple[int, ...]

    @classmethod
    def from_bit(cls, name: str, bit: int, domain: int = GENOTYPE_DOMAIN) -> 'Marker':
        return cls(name=name, bit=bit, index_set=tuple(int(i) for i in marker_index_set(bit, domain)))

    @property
    def column(self) -> str:
        return f"{self.name}_freq"


def verify_legacy_table(marker: Marker, legacy_ids: Sequence[int]) -> None:
    """
    Check that a hand-written index list matches the computed index set.

    Raises:
        CustomizedError: if the two sets differ, naming the indices on each side.
    """
    legacy = set(int(i) for i in legacy_ids)
    computed = set(marker.index_set)
    if legacy != computed:
        missing = sorted(computed - legacy)
        extra = sorted(legacy - computed)
        raise CustomizedError(
            f"Legacy index table for marker '{marker.name}' does not match bit {marker.bit}: "
            f"missing {missing}, unexpected {extra}")


class MarkerPanel:
    """
    The ordered, read-only set of markers used for one batch.

    The panel is built once and shared by every run. It stores a boolean mask
    of shape (n_markers, domain), so the per-marker sums of a genotype vector
    come from a single matrix product.
    """

    def __init__(self, markers: Dict[str, int] = None, domain: int = GENOTYPE_DOMAIN,
                 legacy_tables: Dict[str, Sequence[int]] = None):
        markers = DEFAULT_MARKERS if markers is None else markers
        if len(markers) == 0:
            raise CustomizedError("At least one marker must be configured")
        bits = list(markers.values())
        if len(set(bits)) != len(bits):
            raise CustomizedError(f"Two markers share the same bit: {markers}")

        self.domain = domain
        self.markers: List[Marker] = [Marker.from_bit(name, bit, domain) for name, bit in markers.items()]

        mask = np.zeros((len(self.markers), domain), dtype=bool)
        for row, marker in enumerate(self.markers):
            mask[row, list(marker.index_set)] = True
        mask.setflags(write=False)
        self._mask = mask
        self._weights = mask.astype(float)

        for name, legacy_ids in (legacy_tables or {}).items():
            verify_legacy_table(self.get(name), legacy_ids)

    @property
    def names(self) -> List[str]:
        return [m.name for m in self.markers]

    @property
    def columns(self) -> List[str]:
        return [m.column for m in self.markers]

    @property
    def mask(self) -> np.ndarray:
        return self._mask

    def get(self, name: str) -> Marker:
        for marker in self.markers:
            if marker.name == name:
                return marker
        raise CustomizedError(f"Unknown marker '{name}'. Configured markers: {self.names}")

    def marker_sums(self, genotype_freqs: np.ndarray) -> np.ndarray:
        """Unnormalised frequency mass over each marker's index set."""
        if genotype_freqs.shape != (self.domain,):
            raise CustomizedError(
                f"Genotype vector has shape {genotype_freqs.shape}, expected ({self.domain},)")
        return self._weights @ genotype_freqs

    def __len__(self):
        return len(self.markers)
