from __future__ import annotations

import logging
from dataclasses import dataclass, field

from stockrecon.domain.errors import PartialApplicationError, PersistenceError


@dataclass
class StepTracker:
    """Records ledger steps of one multi-step operation so a mid-way failure can name them.

    No compensation is attempted; applied steps stay applied. A first step whose
    outcome is unknown (timed-out write) is reported as partial too.
    """

    operation: str
    logger: logging.Logger
    applied: list[dict] = field(default_factory=list)

    def run(self, ledger, product_id: int, location_id: int, delta: int, **kwargs) -> int:
        step = {"product_id": int(product_id), "location_id": int(location_id), "delta": int(delta)}
        try:
            new_qty = ledger.adjust(product_id, location_id, delta, **kwargs)
        except Exception as exc:
            unknown = isinstance(exc, PersistenceError) and exc.outcome_unknown
            if not self.applied and not unknown:
                raise
            err = PartialApplicationError(self.operation, self.applied, step, exc)
            self.logger.error("partial_application %s", err)
            raise err from exc
        step["new_qty"] = new_qty
        self.applied.append(step)
        return new_qty
