"""Relabel clusters across labelings so that matching clusters share IDs.

Matching is an optimal one-to-one assignment on the overlap (contingency)
table. Reference IDs are never renumbered; target clusters without an
acceptable partner get fresh IDs above the reference maximum.
"""
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union
from dataclasses import dataclass, field
import logging

import numpy as np
from scipy.optimize import linear_sum_assignment
from sklearn.metrics.cluster import contingency_matrix

from .exceptions import ConfigurationError, InputMismatchError
from .types import ClusterLabeling, ParameterCombo

_log = logging.getLogger("banksyscope")


@dataclass
class HarmonizationEntry:
    target: str
    reference: Optional[str]
    mapping: Dict[int, int]
    note: Optional[str] = None


@dataclass
class HarmonizationReport:
    mode: str
    reference: Optional[str]
    entries: Dict[str, HarmonizationEntry] = field(default_factory=dict)

    @property
    def notes(self) -> Dict[str, str]:
        return {k: e.note for k, e in self.entries.items() if e.note}


def contingency(a: np.ndarray, b: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Overlap counts of `a` clusters (rows) against `b` clusters (columns).

    Returns (table, a_ids, b_ids) with ids sorted ascending.
    """
    a = np.asarray(a).ravel()
    b = np.asarray(b).ravel()
    if a.shape != b.shape:
        raise InputMismatchError(f"Cannot match labelings of length {a.size} and {b.size}")
    return contingency_matrix(a, b), np.unique(a), np.unique(b)


def match_labels(
    reference: np.ndarray,
    target: np.ndarray,
    min_overlap: float = 0.0,
) -> Tuple[np.ndarray, Dict[int, int], Optional[str]]:
    """Relabel `target` against `reference`.

    A pair is acceptable when it shares at least one cell and at least
    `min_overlap` of the target cluster. Returns (new_labels, mapping, note);
    note is set when nothing matched and the target was left unchanged.
    """
    if not 0.0 <= float(min_overlap) <= 1.0:
        raise ConfigurationError(f"min_overlap must lie in [0, 1], got {min_overlap}")
    tgt = np.asarray(target).ravel()
    if tgt.size == 0 and np.asarray(reference).size == 0:
        return tgt.astype(np.int64), {}, None
    table, ref_ids, tgt_ids = contingency(reference, tgt)

    table = table.astype(np.float64)
    sizes = table.sum(axis=0)
    acceptable = (table > 0) & (table >= float(min_overlap) * sizes[None, :])
    weight = np.where(acceptable, table, 0.0)
    # ties go to pairs that already share an ID; total bonus stays below one cell
    eps = 0.5 / (min(table.shape) + 1)
    weight = weight + eps * (ref_ids[:, None] == tgt_ids[None, :])
    rows, cols = linear_sum_assignment(weight, maximize=True)

    mapping: Dict[int, int] = {}
    for r, c in zip(rows, cols):
        if acceptable[r, c]:
            mapping[int(tgt_ids[c])] = int(ref_ids[r])
    if not mapping:
        note = "no acceptable cluster overlap with the match target; original IDs kept"
        return tgt.astype(np.int64, copy=True), {int(t): int(t) for t in tgt_ids}, note

    next_id = int(ref_ids.max()) + 1
    for t in tgt_ids:
        if int(t) not in mapping:
            mapping[int(t)] = next_id
            next_id += 1
    lookup = np.array([mapping[int(t)] for t in tgt_ids], dtype=np.int64)
    return lookup[np.searchsorted(tgt_ids, tgt)], mapping, None


LabelingsArg = Union[Sequence[ClusterLabeling], Mapping[object, ClusterLabeling]]


def _as_list(labelings: LabelingsArg) -> List[ClusterLabeling]:
    if isinstance(labelings, Mapping):
        return list(labelings.values())
    return list(labelings)


def _find_reference(items: List[ClusterLabeling], reference) -> ClusterLabeling:
    if isinstance(reference, ClusterLabeling):
        if not any(l is reference for l in items):
            raise ConfigurationError(f"Reference labeling {reference.name} is not part of the harmonized set")
        return reference
    for l in items:
        if (isinstance(reference, ParameterCombo) and l.combo == reference) or l.name == reference:
            return l
    raise ConfigurationError(f"Reference labeling {reference!r} not found")


def _apply(target: ClusterLabeling, ref: ClusterLabeling, min_overlap: float) -> HarmonizationEntry:
    new, mapping, note = match_labels(ref.labels, target.labels, min_overlap=min_overlap)
    target.labels[...] = new
    target.reference = ref.name
    if note:
        target.notes.append(note)
        _log.warning("Harmonize %s against %s: %s", target.name, ref.name, note)
    return HarmonizationEntry(target.name, ref.name, mapping, note)


def harmonize_labelings(
    labelings: LabelingsArg,
    reference: Union[None, str, ParameterCombo, ClusterLabeling] = None,
    min_overlap: float = 0.0,
) -> HarmonizationReport:
    """Harmonize labelings in place.

    Without `reference` each labeling is matched against the previously
    processed one (chain, in the supplied order); with one every labeling is
    matched directly against it. Failed labelings are skipped.
    """
    items = _as_list(labelings)
    usable = [l for l in items if l.ok]
    skipped = [l.name for l in items if not l.ok]
    if skipped:
        _log.info("Harmonize: skipping %d failed labeling(s): %s", len(skipped), ", ".join(skipped))
    n = {l.labels.size for l in usable}
    if len(n) > 1:
        raise InputMismatchError(f"Labelings have different lengths: {sorted(n)}")

    if reference is None:
        report = HarmonizationReport(mode='chain', reference=usable[0].name if usable else None)
        prev: Optional[ClusterLabeling] = None
        for l in usable:
            if prev is not None:
                report.entries[l.name] = _apply(l, prev, min_overlap)
            prev = l
        return report

    ref = _find_reference(items, reference)
    if not ref.ok:
        raise ConfigurationError(f"Reference labeling {ref.name} failed and cannot anchor harmonization")
    report = HarmonizationReport(mode='reference', reference=ref.name)
    for l in usable:
        if l is ref:
            continue
        report.entries[l.name] = _apply(l, ref, min_overlap)
    return report
