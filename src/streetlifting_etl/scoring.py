"""streetlifting_etl.scoring

RIS (Relative Index for Streetlifting) scoring engine.

    RIS = T × 100 / (A + (K − A) / (1 + Q · e^(−B · (BW − v))))

T is the participant total (sum of best successful lifts), BW the
bodyweight, and A, K, B, v, Q the gender-specific constants of a formula
version. All arithmetic is Decimal in a 28-digit local context; the result
is rounded half-even to 0.01. Pure functions, no I/O.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal, localcontext
from typing import Iterable

from streetlifting_etl.canonical import AttemptData, LiftData
from streetlifting_etl.formula_ledger import FormulaConstants, FormulaVersion
from streetlifting_etl.shared import ArithmeticDomainError

PRECISION = 28
SCORE_QUANTUM = Decimal("0.01")
_HUNDRED = Decimal(100)
_ONE = Decimal(1)


def compute_score_with_constants(
    total: Decimal,
    bodyweight: Decimal,
    constants: FormulaConstants,
) -> Decimal:
    if total <= 0:
        raise ArithmeticDomainError(f"total must be > 0, got {total}")
    if bodyweight <= 0:
        raise ArithmeticDomainError(f"bodyweight must be > 0, got {bodyweight}")

    with localcontext() as ctx:
        ctx.prec = PRECISION
        c = constants
        exponent = -c.b * (bodyweight - c.v)
        denominator = c.a + (c.k - c.a) / (_ONE + c.q * exponent.exp())
        if denominator <= 0:
            raise ArithmeticDomainError(f"formula denominator is not positive ({denominator})")
        score = total * _HUNDRED / denominator
        return score.quantize(SCORE_QUANTUM, rounding=ROUND_HALF_EVEN)


def compute_score(
    total: Decimal,
    bodyweight: Decimal,
    gender: str,
    formula: FormulaVersion,
) -> Decimal:
    """Score a total at a bodyweight with the gender's constants of formula."""
    return compute_score_with_constants(total, bodyweight, formula.constants_for_gender(gender))


def lift_best(attempts: Iterable[AttemptData]) -> Decimal | None:
    """Heaviest successful attempt, or None when every attempt failed."""
    best = None
    for attempt in attempts:
        if attempt.is_successful and (best is None or attempt.weight > best):
            best = attempt.weight
    return best


def participant_total(lifts: Iterable[LiftData]) -> Decimal:
    """Sum of the best successful attempt of each lift (0 if none)."""
    total = Decimal(0)
    for lift in lifts:
        best = lift_best(lift.attempts)
        if best is not None:
            total += best
    return total
