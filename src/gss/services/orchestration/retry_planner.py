"""Retry planner: decides what happens after each generation attempt.

The planner is a pure function of the finalized attempt (number, verdict,
failure reason, suggested fix, parameters). Calling it twice with the same
input yields the same decision, which is what lets a resumed render loop
re-plan from its last finalized attempt after a crash.
"""

from dataclasses import dataclass
from enum import Enum

from gss.core.config import ATTEMPT_NUMBER_CEILING, Settings
from gss.models.attempt import GenerationParameters, QCVerdict
from gss.services.exceptions import AttemptLimitError

EVALUATOR_ERROR_REASON = "evaluator error"


class PlanAction(str, Enum):
    SUCCEED = "SUCCEED"
    RETRY = "RETRY"
    EXHAUSTED = "EXHAUSTED"
    ESCALATE = "ESCALATE"


class FixCategory(str, Enum):
    """Suggested fixes the planner knows how to apply."""

    REDUCE_STRUCTURE_SCALE = "reduce_structure_scale"
    INCREASE_STRUCTURE_SCALE = "increase_structure_scale"
    INCREASE_STEPS = "increase_steps"
    REDUCE_STEPS = "reduce_steps"
    REDUCE_CFG_SCALE = "reduce_cfg_scale"
    INCREASE_CFG_SCALE = "increase_cfg_scale"
    CHANGE_SAMPLER = "change_sampler"


@dataclass(frozen=True)
class RetryDecision:
    action: PlanAction
    parameters: GenerationParameters
    next_attempt_number: int | None = None
    failure_reason: str | None = None
    applied_fix: FixCategory | None = None

    @property
    def is_terminal(self) -> bool:
        return self.action != PlanAction.RETRY


@dataclass(frozen=True)
class RetryPolicy:
    """Explicit parameter deltas for each fix category."""

    max_attempts: int = ATTEMPT_NUMBER_CEILING
    structure_scale_step: float = 0.10
    steps_step: int = 10
    max_steps: int = 150
    cfg_scale_step: float = 1.0
    min_cfg_scale: float = 1.0
    max_cfg_scale: float = 20.0
    sampler_rotation: tuple[str, ...] = ("DPM++", "Euler a", "DDIM")

    def __post_init__(self):
        if not 1 <= self.max_attempts <= ATTEMPT_NUMBER_CEILING:
            raise ValueError(f"max_attempts must be within 1..{ATTEMPT_NUMBER_CEILING}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts_per_render,
            structure_scale_step=settings.structure_scale_step,
            steps_step=settings.steps_step,
            max_steps=settings.max_steps,
            cfg_scale_step=settings.cfg_scale_step,
            min_cfg_scale=settings.min_cfg_scale,
            max_cfg_scale=settings.max_cfg_scale,
            sampler_rotation=tuple(settings.sampler_rotation_list),
        )


def normalize_fix(suggested_fix: str | None) -> str | None:
    """Normalize a free-form fix hint ("Reduce structure-scale" -> "reduce_structure_scale")."""
    if suggested_fix is None:
        return None
    normalized = "_".join(suggested_fix.strip().lower().replace("-", " ").split())
    return normalized or None


def normalize_verdict(verdict: QCVerdict | str | None) -> QCVerdict | None:
    """Map evaluator output onto PASS/FAIL; anything else becomes None."""
    if isinstance(verdict, QCVerdict):
        return verdict
    if isinstance(verdict, str):
        try:
            return QCVerdict(verdict.strip().upper())
        except ValueError:
            return None
    return None


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class RetryPlanner:
    """Maps a finalized attempt onto SUCCEED, RETRY, EXHAUSTED or ESCALATE."""

    def __init__(self, policy: RetryPolicy | None = None):
        self.policy = policy or RetryPolicy()

    def plan(
        self,
        attempt_number: int,
        verdict: QCVerdict | str | None,
        failure_reason: str | None,
        suggested_fix: str | None,
        parameters: GenerationParameters,
    ) -> RetryDecision:
        """Decide the next step for a render.

        Args:
            attempt_number: Number of the attempt that was just finalized (1..5)
            verdict: QC verdict as recorded; missing or invalid counts as FAIL
            failure_reason: Reason recorded with a FAIL verdict
            suggested_fix: Fix hint recorded with a FAIL verdict
            parameters: Parameters the attempt ran with

        Returns:
            RetryDecision. RETRY carries the adjusted parameters and the next
            attempt number; the other actions carry the unchanged parameters.

        Raises:
            AttemptLimitError: If attempt_number is outside 1..5
        """
        if not 1 <= attempt_number <= ATTEMPT_NUMBER_CEILING:
            raise AttemptLimitError(
                f"attempt_number must be within 1..{ATTEMPT_NUMBER_CEILING}, got {attempt_number}"
            )

        normalized = normalize_verdict(verdict)
        if normalized == QCVerdict.PASS:
            return RetryDecision(action=PlanAction.SUCCEED, parameters=parameters)

        if normalized is None:
            failure_reason = EVALUATOR_ERROR_REASON
            suggested_fix = None

        if attempt_number >= self.policy.max_attempts:
            return RetryDecision(
                action=PlanAction.EXHAUSTED,
                parameters=parameters,
                failure_reason=failure_reason,
            )

        fix_key = normalize_fix(suggested_fix)
        if fix_key is None:
            return RetryDecision(
                action=PlanAction.RETRY,
                parameters=parameters,
                next_attempt_number=attempt_number + 1,
                failure_reason=failure_reason,
            )

        try:
            fix = FixCategory(fix_key)
        except ValueError:
            return RetryDecision(
                action=PlanAction.ESCALATE,
                parameters=parameters,
                failure_reason=failure_reason,
            )

        return RetryDecision(
            action=PlanAction.RETRY,
            parameters=self.apply_fix(fix, parameters),
            next_attempt_number=attempt_number + 1,
            failure_reason=failure_reason,
            applied_fix=fix,
        )

    def apply_fix(self, fix: FixCategory, parameters: GenerationParameters) -> GenerationParameters:
        """Apply one fix category as a delta on the previous parameter record."""
        policy = self.policy

        if fix == FixCategory.REDUCE_STRUCTURE_SCALE:
            value = _clamp(parameters.structure_scale - policy.structure_scale_step, 0.0, 1.0)
            return parameters.model_copy(update={"structure_scale": round(value, 4)})

        if fix == FixCategory.INCREASE_STRUCTURE_SCALE:
            value = _clamp(parameters.structure_scale + policy.structure_scale_step, 0.0, 1.0)
            return parameters.model_copy(update={"structure_scale": round(value, 4)})

        if fix == FixCategory.INCREASE_STEPS:
            steps = min(policy.max_steps, parameters.steps + policy.steps_step)
            return parameters.model_copy(update={"steps": max(steps, parameters.steps)})

        if fix == FixCategory.REDUCE_STEPS:
            return parameters.model_copy(
                update={"steps": max(1, parameters.steps - policy.steps_step)}
            )

        if fix == FixCategory.REDUCE_CFG_SCALE:
            value = max(policy.min_cfg_scale, parameters.cfg_scale - policy.cfg_scale_step)
            return parameters.model_copy(update={"cfg_scale": round(value, 4)})

        if fix == FixCategory.INCREASE_CFG_SCALE:
            value = min(policy.max_cfg_scale, parameters.cfg_scale + policy.cfg_scale_step)
            return parameters.model_copy(update={"cfg_scale": round(value, 4)})

        # CHANGE_SAMPLER: next sampler in the rotation (first one if current is unknown)
        rotation = policy.sampler_rotation
        if not rotation:
            return parameters
        if parameters.sampler in rotation:
            index = (rotation.index(parameters.sampler) + 1) % len(rotation)
        else:
            index = 0
        return parameters.model_copy(update={"sampler": rotation[index]})
