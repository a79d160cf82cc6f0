"""Advisory failure records collected by multi-step operations."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Advisory:
    step: str
    message: str

    def to_dict(self) -> dict:
        return {"step": self.step, "message": self.message}


def best_effort(
    advisories: list[Advisory],
    step: str,
    fn: Callable[..., T],
    *args,
    **kwargs,
) -> T | None:
    """Run fn, recording a failure as an advisory instead of raising.

    Returns fn's result, or None when it raised.
    """
    try:
        return fn(*args, **kwargs)
    except Exception as e:
        logger.warning("%s failed: %s", step, e)
        advisories.append(Advisory(step=step, message=str(e)))
        return None
