"""Step skip conditions and element state conditions."""

import math
import random
from typing import Any, Optional

import structlog

from ..core.errors import ActionConfigError

logger = structlog.get_logger()

DEFAULT_PROBABILITY = 0.5

LOOP_INDEX_CONDITIONS = frozenset({
    "loop_index_is_even",
    "loop_index_is_odd",
    "loop_index_is_prime",
    "random",
})

ELEMENT_CONDITIONS = frozenset({
    "is_enabled",
    "is_disabled",
    "is_visible",
    "is_hidden",
    "is_checked",
    "is_editable",
})


def is_prime(n: int) -> bool:
    """Trial-division primality test."""
    if n < 2:
        return False
    if n < 4:
        return True
    if n % 2 == 0:
        return False
    for divisor in range(3, math.isqrt(n) + 1, 2):
        if n % divisor == 0:
            return False
    return True


def evaluate_loop_condition(
    condition: str,
    loop_index: int,
    probability: float = DEFAULT_PROBABILITY,
    rng: Optional[random.Random] = None,
) -> bool:
    """Evaluate a loop-index condition. Unknown conditions are False."""
    if condition == "loop_index_is_even":
        return loop_index % 2 == 0
    if condition == "loop_index_is_odd":
        return loop_index % 2 == 1
    if condition == "loop_index_is_prime":
        return is_prime(loop_index)
    if condition == "random":
        return (rng or random).random() < probability
    return False


def parse_probability(value: Any) -> float:
    if value is None or value == "":
        return DEFAULT_PROBABILITY
    try:
        probability = float(value)
    except (TypeError, ValueError):
        logger.warning("invalid_probability", value=value)
        return DEFAULT_PROBABILITY
    return min(max(probability, 0.0), 1.0)


def should_skip_step(
    step_config: dict[str, Any],
    loop_index: int,
    rng: Optional[random.Random] = None,
) -> bool:
    """
    Decide whether a step is skipped for this loop index.

    ``skip_condition`` skips when true; ``run_only_condition`` skips when
    false. Both draw from the same ``probability`` for ``random``.
    """
    if not step_config:
        return False

    probability = parse_probability(step_config.get("probability"))

    skip_condition = step_config.get("skip_condition")
    if skip_condition and evaluate_loop_condition(skip_condition, loop_index, probability, rng):
        return True

    run_only_condition = step_config.get("run_only_condition")
    if run_only_condition and not evaluate_loop_condition(
        run_only_condition, loop_index, probability, rng
    ):
        return True

    return False


async def check_element_condition(page: Any, selector: str, condition_type: str) -> bool:
    """Evaluate an element state condition through the page's locator API."""
    if condition_type not in ELEMENT_CONDITIONS:
        raise ActionConfigError(
            f"unsupported condition_type '{condition_type}'", field="condition_type"
        )
    locator = page.locator(selector)
    return bool(await getattr(locator, condition_type)())
