"""
Result aggregation: per-component outcomes -> one AggregatedResult.

Pure and deterministic. Count invariants are checked on every call; a
violation is an internal bug (AggregationError), not a caller error.
"""

from typing import Any, Dict, List, Optional, Sequence

from ...errors import AggregationError
from ...models import AggregatedResult, ComponentOutcome, OutcomeKind


def _error_entry(outcome: ComponentOutcome) -> Dict[str, Any]:
    return {
        "type": outcome.type,
        "component": outcome.component,
        "error": outcome.error or "Unknown error",
        "errorKind": outcome.kind.value,
    }


def _check_variant(index: int, outcome: ComponentOutcome) -> None:
    kind = outcome.kind
    if kind is OutcomeKind.SUCCESS:
        if not outcome.success:
            raise AggregationError(f"results[{index}] is a failure tagged Success")
    elif kind in (
        OutcomeKind.NOT_FOUND,
        OutcomeKind.UPSTREAM_ERROR,
        OutcomeKind.VALIDATION_ERROR,
        OutcomeKind.DEPLOY_TIMEOUT,
    ):
        if outcome.success:
            raise AggregationError(f"results[{index}] is a success tagged {kind.value}")
    else:
        raise AggregationError(f"results[{index}] has unknown outcome kind {kind!r}")


def aggregate(
    outcomes: Sequence[ComponentOutcome],
    operation: str,
    api_version: str,
    expected_total: Optional[int] = None,
    rollback_on_error: bool = False,
    **extra,
) -> AggregatedResult:
    """Merge outcomes into a single result.

    Args:
        outcomes: One outcome per input descriptor, in input order
        operation: deploy, retrieve or records (selects the count field names)
        api_version: API version the operation ran against
        expected_total: Number of inputs; must equal len(outcomes) when given
        rollback_on_error: Any failure makes the whole batch unsuccessful
        **extra: transport, check_only, job_id, status, timed_out

    Returns:
        AggregatedResult
    """
    results: List[ComponentOutcome] = list(outcomes)
    total = len(results)
    if expected_total is not None and expected_total != total:
        raise AggregationError(f"Expected {expected_total} outcomes, got {total}")

    for index, outcome in enumerate(results):
        _check_variant(index, outcome)

    succeeded = sum(1 for o in results if o.success)
    failed = sum(1 for o in results if not o.success)
    if succeeded + failed != total:
        raise AggregationError("Outcome counts do not add up")

    success = failed == 0
    rolled_back = None
    if rollback_on_error and failed:
        success = False
        rolled_back = True

    return AggregatedResult(
        operation=operation,
        success=success,
        total=total,
        succeeded=succeeded,
        failed=failed,
        results=results,
        errors=[_error_entry(o) for o in results if not o.success],
        api_version=api_version,
        rolled_back=rolled_back,
        **extra,
    )


__all__ = ["aggregate"]
