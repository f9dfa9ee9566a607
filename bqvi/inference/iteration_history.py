import dataclasses
from enum import Enum
from textwrap import indent

import numpy as np

from bqvi.formatting import format_dict


class EventTag(Enum):
    """Notable actions of an iteration; the value is the logged text."""

    START_WARMUP = "start warm-up"
    END_WARMUP = "end warm-up"
    TRIM_DATA = "trim data"
    ENTROPY_SWITCH = "entropy switch"
    STABLE = "stable"
    STABLE_GP_SAMPLING = "stable GP sampling"
    FIT_FALLBACK = "fit fallback"
    SKIP_ACTIVE_SAMPLING = "skip active sampling"
    REMOVE_COMPONENTS = "remove components"
    FINALIZE = "finalize"


@dataclasses.dataclass(frozen=True)
class IterationRecord:
    """
    Snapshot of one iteration of the inference loop.

    Records are never modified; the stability flag is set post hoc by
    replacing the record (see ``IterationHistory.mark_stable``).
    """

    iter: int
    func_count: int
    cache_count: int
    n_eff: float
    K: int
    elbo: float
    elbo_sd: float
    elcbo_impro: float
    skl: float
    skl_true: float
    r_index: float
    n_gp: int
    gp_noise_hpd: float
    lcb_max: float
    entropy_kind: object
    warmup: bool
    pruned: int = 0
    stable: bool = False
    timing: dict = dataclasses.field(default_factory=dict)
    events: tuple = ()
    vp: object = dataclasses.field(default=None, repr=False)
    gp: object = dataclasses.field(default=None, repr=False)

    @property
    def action(self):
        """Human-readable summary of the events of the iteration."""
        return ", ".join(event.value for event in self.events)


class IterationHistory:
    """
    Ordered store of ``IterationRecord`` objects.

    Indexing with an integer (or slice) returns records; indexing with a
    field name returns that field across all iterations as an array, e.g.
    ``history["elbo"]``.
    """

    _fields = tuple(f.name for f in dataclasses.fields(IterationRecord))

    def __init__(self):
        self._records = []

    def append(self, record: IterationRecord):
        if not isinstance(record, IterationRecord):
            raise TypeError("Only IterationRecord objects can be stored.")
        if record.iter != len(self._records):
            raise ValueError(
                f"Expected a record for iteration {len(self._records)}, "
                f"got iteration {record.iter}."
            )
        self._records.append(record)

    def replace(self, iteration: int, **changes):
        """Swap the record of `iteration` for a copy with `changes` applied."""
        self._records[iteration] = dataclasses.replace(
            self._records[iteration], **changes
        )
        return self._records[iteration]

    def mark_stable(self, iteration: int, stable: bool = True):
        return self.replace(iteration, stable=stable)

    def __getitem__(self, key):
        if isinstance(key, str):
            if key not in self._fields and key != "action":
                raise KeyError(key)
            values = [getattr(r, key) for r in self._records]
            if key in ("vp", "gp", "timing", "events", "entropy_kind"):
                column = np.empty(len(values), dtype=object)
                column[:] = values
                return column
            return np.array(values)
        return self._records[key]

    def __len__(self):
        return len(self._records)

    def __iter__(self):
        return iter(self._records)

    def __bool__(self):
        return len(self._records) > 0

    def __str__(self):
        return "IterationHistory:\n" + indent(
            f"num. iterations = {len(self)}\nfields = \n"
            + indent(",\n".join(self._fields), "    "),
            "    ",
        )

    def __repr__(self, full=False, arr_size_thresh=10, expand=False):
        if full:
            columns = {
                key: self[key] for key in self._fields if key not in ("vp", "gp")
            }
            return "IterationHistory:\n" + indent(
                format_dict(columns, arr_size_thresh=arr_size_thresh), "    "
            )
        return str(self)

    def _short_repr(self):
        return object.__repr__(self)
