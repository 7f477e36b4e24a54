"""
Validation gate: turns a validator into a pipeline stage.

A stage is ``async (context, call_next)``. ``await call_next()`` hands the
request to the next stage; ``await call_next(error)`` abandons the chain and
routes ``error`` to the pipeline's error handler. The gate does exactly one
of the two per invocation.
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional, Protocol, Union, runtime_checkable

from shared.errors import ErrorKind
from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from .context import PipelineContext
from .results import ValidationErr, ValidationOk, ValidationResult

logger = get_logger("gate.pipeline")

MaybeAwaitable = Union[ValidationResult, Awaitable[ValidationResult]]
NextStage = Callable[..., Awaitable[Any]]
Stage = Callable[[PipelineContext, NextStage], Awaitable[Any]]
Handler = Callable[[PipelineContext], Awaitable[Any]]
ErrorHandler = Callable[[PipelineContext, ValidationErr], Awaitable[Any]]


@runtime_checkable
class Validator(Protocol):
    """Anything that checks a request and reports a ValidationResult."""

    def invoke(self, options: Mapping[str, Any]) -> MaybeAwaitable:
        ...


class FunctionValidator:
    """Adapts a plain (sync or async) function to the Validator protocol."""

    def __init__(self, func: Callable[[Mapping[str, Any]], MaybeAwaitable]) -> None:
        self.func = func
        self.name = getattr(func, "__name__", type(func).__name__)

    def invoke(self, options: Mapping[str, Any]) -> MaybeAwaitable:
        return self.func(options)


def as_validator(validator: Union[Validator, Callable[[Mapping[str, Any]], MaybeAwaitable]]) -> Validator:
    if isinstance(validator, Validator):
        return validator
    if callable(validator):
        return FunctionValidator(validator)
    raise TypeError(f"{validator!r} is neither a validator nor callable")


def validation_gate(
    result_name: str,
    validator: Union[Validator, Callable[[Mapping[str, Any]], MaybeAwaitable]],
    *,
    metrics: Optional[MetricsCollector] = None,
    **static_options: Any,
) -> Stage:
    """Build a stage that runs ``validator`` once per request.

    On success the whole ValidationOk is stored on the context under
    ``result_name`` and the chain continues. On failure the context is left
    untouched and the ValidationErr goes to the error handler. A validator
    that raises, or returns anything but a ValidationResult, counts as an
    InternalValidatorFault.
    """
    target = as_validator(validator)
    validator_name = getattr(target, "name", None)
    if not isinstance(validator_name, str):
        validator_name = type(target).__name__
    collector = metrics or get_metrics_collector()
    frozen_options = dict(static_options)

    async def run_validator(context: PipelineContext) -> ValidationResult:
        options = dict(frozen_options)
        options["context"] = context
        try:
            result = target.invoke(options)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.error("Validator raised", validator=validator_name, error=str(exc), exc_info=True)
            return ValidationErr(
                ErrorKind.INTERNAL_VALIDATOR_FAULT,
                f"Validator '{validator_name}' failed: {exc}",
                frozen_options.get("docs_url"),
            )

        if not isinstance(result, (ValidationOk, ValidationErr)):
            logger.error("Validator returned no result", validator=validator_name, returned=type(result).__name__)
            return ValidationErr(
                ErrorKind.INTERNAL_VALIDATOR_FAULT,
                f"Validator '{validator_name}' returned {type(result).__name__}",
                frozen_options.get("docs_url"),
            )
        return result

    async def stage(context: PipelineContext, call_next: NextStage) -> Any:
        result = await run_validator(context)
        if isinstance(result, ValidationErr):
            collector.record_validation(validator_name, "rejected", result.kind.value)
            logger.warning(
                "Validation gate halted",
                result=result_name,
                validator=validator_name,
                kind=result.kind.value,
                detail=result.detail,
            )
            return await call_next(result)

        collector.record_validation(validator_name, "passed")
        context.set_result(result_name, result)
        return await call_next()

    stage.__name__ = f"validation_gate[{result_name}]"
    return stage


def attach_whitelist(source: Union[Iterable[Any], Callable[[PipelineContext], Any]]) -> Stage:
    """Upstream stage placing caller-owned trust entries on the context.

    ``source`` is a sequence of entries, or a sync/async callable taking the
    context and returning one.
    """

    async def stage(context: PipelineContext, call_next: NextStage) -> Any:
        entries = source(context) if callable(source) else source
        if inspect.isawaitable(entries):
            entries = await entries
        context.set_whitelist(entries or ())
        return await call_next()

    return stage


async def _terminal(context: PipelineContext) -> PipelineContext:
    return context


async def _return_error(context: PipelineContext, error: ValidationErr) -> ValidationErr:
    return error


class Pipeline:
    """Runs stages strictly in order for one request at a time.

    ``handler`` runs after the last stage continues; ``error_handler`` runs
    instead as soon as any stage halts.
    """

    def __init__(
        self,
        stages: Iterable[Stage] = (),
        handler: Handler = _terminal,
        error_handler: ErrorHandler = _return_error,
    ) -> None:
        self.stages: List[Stage] = list(stages)
        self.handler = handler
        self.error_handler = error_handler

    def use(self, stage: Stage) -> "Pipeline":
        self.stages.append(stage)
        return self

    async def run(self, context: PipelineContext) -> Any:
        stages = tuple(self.stages)

        async def dispatch(index: int, error: Optional[ValidationErr] = None) -> Any:
            if error is not None:
                return await self.error_handler(context, error)
            if index == len(stages):
                return await self.handler(context)

            called = False

            async def call_next(error: Optional[ValidationErr] = None) -> Any:
                nonlocal called
                if called:
                    raise RuntimeError(f"Stage {index} called next more than once")
                called = True
                return await dispatch(index + 1, error)

            return await stages[index](context, call_next)

        return await dispatch(0)
