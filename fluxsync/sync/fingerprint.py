"""
FINGERPRINT DIFFER
Detects meaningful row changes between two adjacent snapshots

A fingerprint covers only the declared operational fields, in declared order.
Floats are rounded before digesting so backend float jitter never reads as a
change, and missing values digest to a sentinel so "no data" never aliases 0.
"""
import hashlib
import math
from typing import Any, Dict, List, Optional

import orjson
import structlog

from config.settings import settings
from fluxsync.core.models import ENTITY_FIELDS, ChangeSet, EntityRow, Snapshot

logger = structlog.get_logger(__name__)

MISSING = "∅missing"
NAN = "∅nan"


def _canonical(value: Any, precision: int) -> Any:
    """Normalize one field value for digesting"""
    if value is None:
        return MISSING
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        number = float(value)
        if math.isnan(number):
            return NAN
        if math.isinf(number):
            return "+inf" if number > 0 else "-inf"
        rounded = round(number, precision)
        # -0.0 and 0.0 are the same position
        return 0.0 if rounded == 0 else rounded
    if isinstance(value, str):
        return value
    # Nested structures are not operational fields, but keep them stable if present
    return orjson.dumps(value, option=orjson.OPT_SORT_KEYS, default=str).decode()


def fingerprint(row: EntityRow, precision: Optional[int] = None) -> str:
    """Deterministic digest of a row's operational fields"""
    precision = settings.FINGERPRINT_PRECISION if precision is None else precision
    values: List[Any] = [_canonical(row.get(name), precision) for name in ENTITY_FIELDS]
    encoded = orjson.dumps([row.key, values])
    return hashlib.sha1(encoded).hexdigest()


def fingerprint_rows(rows: Dict[str, EntityRow], precision: Optional[int] = None) -> Dict[str, str]:
    return {key: fingerprint(row, precision) for key, row in rows.items()}


def diff(
    prev: Optional[Snapshot],
    curr: Snapshot,
    precision: Optional[int] = None,
) -> ChangeSet:
    """
    Compare two adjacent snapshots.

    A key is "changed" only if both snapshots contain it and the fingerprints
    differ. Keys present on one side only are reported as appeared/disappeared.
    """
    curr_rows = curr.entity_rows()
    prev_rows = prev.entity_rows() if prev is not None else {}

    curr_prints = fingerprint_rows(curr_rows, precision)
    prev_prints = fingerprint_rows(prev_rows, precision)

    shared = curr_prints.keys() & prev_prints.keys()
    changed = frozenset(k for k in shared if curr_prints[k] != prev_prints[k])
    appeared = frozenset(curr_prints.keys() - prev_prints.keys())
    disappeared = frozenset(prev_prints.keys() - curr_prints.keys())

    if changed or appeared or disappeared:
        logger.debug(
            "rows_diffed",
            prev_sequence=prev.sequence if prev is not None else None,
            curr_sequence=curr.sequence,
            changed=sorted(changed),
            appeared=sorted(appeared),
            disappeared=sorted(disappeared),
        )

    return ChangeSet(changed=changed, appeared=appeared, disappeared=disappeared)
