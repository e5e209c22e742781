"""Primary-then-fallback execution of one slot's image generation."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass

from product_shoot.config import BackendSettings
from product_shoot.orchestrator.backend.base import BackendRequest, BackendResponse, ImageBackend
from product_shoot.orchestrator.errors import BackendCallError
from product_shoot.orchestrator.failure_classifier import (
    GenerationFailureClassification,
    classify_generation_failure,
)
from product_shoot.orchestrator.models import (
    BackendTier,
    ErrorCategory,
    FailureClass,
    SlotRequest,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LegDiagnostics:
    """What happened on one backend tier."""

    tier: BackendTier
    model: str
    ok: bool
    duration_ms: int
    failure_class: FailureClass | None = None
    category: ErrorCategory | None = None
    message: str | None = None
    matched_rule: str | None = None


@dataclass(frozen=True, slots=True)
class FallbackOutcome:
    """Tagged result: ``ok`` with image bytes, or a classified failure."""

    ok: bool
    image_bytes: bytes | None = None
    mime_type: str = "image/png"
    backend_used: BackendTier | None = None
    failure_class: FailureClass | None = None
    category: ErrorCategory | None = None
    message: str | None = None
    legs: tuple[LegDiagnostics, ...] = ()


@dataclass(slots=True)
class _LegResult:
    response: BackendResponse | None
    classification: GenerationFailureClassification | None
    message: str | None
    duration_ms: int


class ModelFallbackExecutor:
    """Try the primary backend once, then the fallback backend once."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        primary: ImageBackend,
        fallback: ImageBackend,
        primary_model: str,
        fallback_model: str,
        primary_size_hint: int = 2048,
        fallback_size_hint: int = 1024,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.primary_model = primary_model
        self.fallback_model = fallback_model
        self.primary_size_hint = primary_size_hint
        self.fallback_size_hint = fallback_size_hint
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(
        cls,
        settings: BackendSettings,
        *,
        primary: ImageBackend,
        fallback: ImageBackend,
    ) -> ModelFallbackExecutor:
        return cls(
            primary=primary,
            fallback=fallback,
            primary_model=settings.primary_model,
            fallback_model=settings.fallback_model,
            primary_size_hint=settings.primary_size_hint,
            fallback_size_hint=settings.fallback_size_hint,
            timeout_seconds=settings.timeout_seconds,
        )

    def execute(self, request: SlotRequest) -> FallbackOutcome:
        primary_leg = self._run_leg(
            self.primary,
            request,
            tier=BackendTier.PRIMARY,
            model=self.primary_model,
            size_hint=self.primary_size_hint,
        )
        primary_diag = _diagnostics(BackendTier.PRIMARY, self.primary_model, primary_leg)
        if primary_leg.response is not None:
            return _success(primary_leg.response, BackendTier.PRIMARY, (primary_diag,))

        logger.warning(
            "Primary backend failed for task=%s slot=%s (%s); trying fallback.",
            request.task_id,
            request.slot_index,
            primary_leg.message,
        )
        fallback_leg = self._run_leg(
            self.fallback,
            request,
            tier=BackendTier.FALLBACK,
            model=self.fallback_model,
            size_hint=self.fallback_size_hint,
        )
        fallback_diag = _diagnostics(BackendTier.FALLBACK, self.fallback_model, fallback_leg)
        legs = (primary_diag, fallback_diag)
        if fallback_leg.response is not None:
            logger.info(
                "Fallback backend succeeded for task=%s slot=%s.",
                request.task_id,
                request.slot_index,
            )
            return _success(fallback_leg.response, BackendTier.FALLBACK, legs)

        signal = fallback_leg.classification
        if signal.category == ErrorCategory.UNKNOWN:
            signal = primary_leg.classification
        failure_class = _terminal_class(signal)
        logger.warning(
            "Both backends failed for task=%s slot=%s: %s",
            request.task_id,
            request.slot_index,
            fallback_leg.message,
        )
        return FallbackOutcome(
            ok=False,
            failure_class=failure_class,
            category=signal.category,
            message=fallback_leg.message or primary_leg.message,
            legs=legs,
        )

    def _run_leg(
        self,
        backend: ImageBackend,
        request: SlotRequest,
        *,
        tier: BackendTier,
        model: str,
        size_hint: int,
    ) -> _LegResult:
        backend_request = BackendRequest(
            task_id=request.task_id,
            slot_index=request.slot_index,
            prompt=request.prompt,
            reference_images=request.reference_images,
            model=model,
            size_hint=size_hint,
            timeout_seconds=self.timeout_seconds,
            tier=tier,
        )
        started = time.monotonic()
        try:
            response = self._call_with_timeout(backend, backend_request)
        except FutureTimeoutError:
            message = f"{tier.value} backend timed out after {self.timeout_seconds:.0f}s"
            return _LegResult(
                response=None,
                classification=classify_generation_failure(message=message, timed_out=True),
                message=message,
                duration_ms=_elapsed_ms(started),
            )
        except BackendCallError as error:
            return _LegResult(
                response=None,
                classification=classify_generation_failure(
                    message=str(error),
                    status_code=error.status_code,
                    category_hint=error.category,
                ),
                message=str(error),
                duration_ms=_elapsed_ms(started),
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected %s backend error", tier.value)
            return _LegResult(
                response=None,
                classification=classify_generation_failure(message=str(error)),
                message=f"{type(error).__name__}: {error}",
                duration_ms=_elapsed_ms(started),
            )

        if not response.image_bytes:
            message = response.detail or "no image in response"
            return _LegResult(
                response=None,
                classification=classify_generation_failure(
                    message=f"no image: {message}",
                    malformed=True,
                ),
                message=message,
                duration_ms=_elapsed_ms(started),
            )
        return _LegResult(
            response=response,
            classification=None,
            message=None,
            duration_ms=_elapsed_ms(started),
        )

    def _call_with_timeout(
        self,
        backend: ImageBackend,
        backend_request: BackendRequest,
    ) -> BackendResponse:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="backend-call")
        try:
            future = pool.submit(backend.generate, backend_request)
            return future.result(timeout=self.timeout_seconds)
        finally:
            pool.shutdown(wait=False)


def _success(
    response: BackendResponse,
    tier: BackendTier,
    legs: tuple[LegDiagnostics, ...],
) -> FallbackOutcome:
    return FallbackOutcome(
        ok=True,
        image_bytes=response.image_bytes,
        mime_type=response.mime_type,
        backend_used=tier,
        legs=legs,
    )


def _diagnostics(tier: BackendTier, model: str, leg: _LegResult) -> LegDiagnostics:
    classification = leg.classification
    if classification is None:
        return LegDiagnostics(tier=tier, model=model, ok=True, duration_ms=leg.duration_ms)
    return LegDiagnostics(
        tier=tier,
        model=model,
        ok=False,
        duration_ms=leg.duration_ms,
        failure_class=(
            FailureClass.BACKEND_TRANSIENT
            if tier == BackendTier.PRIMARY
            else _terminal_class(classification)
        ),
        category=classification.category,
        message=leg.message,
        matched_rule=classification.matched_rule,
    )


def _terminal_class(classification: GenerationFailureClassification) -> FailureClass:
    if classification.failure_class == FailureClass.MALFORMED_RESPONSE:
        return FailureClass.MALFORMED_RESPONSE
    return FailureClass.BACKEND_TERMINAL


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
