"""
orchestrator/agent_loop.py — Agent Loop

The per-message state machine. For each user message the loop:
    1. Sanitizes the input         (prompt injection detector)
    2. Creates a task record       (store)
    3. Ensures the conversation    (store)
    4. Checks the monthly budget   (cost.budget)
    5. Routes to a model           (brain.router)
    6. Builds bounded context      (ContextBuilder)
    7. Checks the pre-call cost    (cost.pricing)
    8. Drives model ⇄ tool round trips under the kill conditions

Every run ends in exactly one AgentLoopResult with status completed,
failed or killed. Gates raise TerminalConditionError subclasses which
process_message() maps to results; any other exception becomes the
generic failure result. The only exception that leaves process_message()
is TaskCancelledError, raised when the cancellation token fires.

Usage:
    loop = AgentLoop(store=store, provider=provider)
    result = await loop.process_message("conv_1", "What's on my calendar?", ChannelType.CLI)
    print(result.response_text)
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from brain.provider import BaseProvider
from brain.router import ModelSelection, classify_complexity, select_model
from brain.types import ChannelType, ChatMessage, ChatOptions, ChatResponse, StopReason, ToolSchema
from context.builder import ContextBuilder, ContextPayload
from context.summarizer import DEFAULT_SUMMARIZATION_THRESHOLD
from cost.budget import can_afford, is_within_monthly_budget
from cost.pricing import calculate_cost
from exceptions import (
    BudgetExceededError,
    ConsecutiveErrorsError,
    InputValidationError,
    ProviderError,
    RoundTripLimitKillError,
    TaskCancelledError,
    TerminalConditionError,
    TimeoutKillError,
    TokenLimitKillError,
)
from observability.logger import bind_task, clear_task, get_logger
from orchestrator.cancellation import CancellationToken
from orchestrator.loop_helpers import (
    execute_tools,
    extract_key_facts_on_completion,
    extract_response_text,
    trigger_summarization_if_needed,
)
from orchestrator.types import (
    AgentLoopResult,
    KillConditionConfig,
    LoopState,
    SessionState,
    TerminalState,
)
from orchestrator.utils import fire_and_forget
from persistence.records import TaskStatus
from persistence.store import BaseStore
from safety.injection import check_for_injection
from tools.executor import HandlerToolExecutor, ToolExecutor, ToolExecutorFactory
from tools.registry import ToolRegistry

log = get_logger(__name__)

MONTHLY_BUDGET_MESSAGE = (
    "Monthly budget has been exceeded. Please adjust your budget or wait until next month."
)
PRE_CALL_BUDGET_MESSAGE = (
    "This request would exceed the task budget. Please try a simpler request."
)
UNEXPECTED_ERROR_MESSAGE = TerminalConditionError.user_message
COMPLETED_FALLBACK_MESSAGE = "I completed your request."

# Output cap for every model call
MAX_OUTPUT_TOKENS = 4096
# Conservative per-round estimate: ~1k tokens each way
_ROUND_ESTIMATE_TOKENS = 1000
_DESCRIPTION_MAX_CHARS = 200
_CANCELLED_REASON = "Cancelled"

_STATUS_FOR_OUTCOME = {
    TerminalState.FAILED: TaskStatus.FAILED,
    TerminalState.KILLED: TaskStatus.KILLED,
}


class AgentLoop:
    """
    Drives one user message through routing, model calls and tools.

    Inject all dependencies via constructor; use from_settings() when
    wiring up the application. One AgentLoop serves any number of
    concurrent process_message() calls: all per-run state is call-local.
    """

    def __init__(
        self,
        store: BaseStore,
        provider: BaseProvider,
        config: Optional[KillConditionConfig] = None,
        user_name: str = "User",
        security_level: int = 3,
        monthly_budget_usd: float = 20.0,
        context_builder: Optional[ContextBuilder] = None,
        tool_registry: Optional[ToolRegistry] = None,
        tool_executor_factory: Optional[ToolExecutorFactory] = None,
        summarization_threshold: int = DEFAULT_SUMMARIZATION_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._provider = provider
        self._config = config or KillConditionConfig()
        self._user_name = user_name
        self._security_level = security_level
        self._monthly_budget_usd = monthly_budget_usd
        self._ctx = context_builder or ContextBuilder()
        self._registry = tool_registry or ToolRegistry()
        self._executor_factory = tool_executor_factory or self._default_executor
        self._summarization_threshold = summarization_threshold
        self._clock = clock

    @property
    def config(self) -> KillConditionConfig:
        return self._config

    @property
    def enabled_providers(self) -> list[str]:
        if self._config.enabled_providers is None:
            return [self._provider.name]
        return list(self._config.enabled_providers)

    def _default_executor(self, task_id: str) -> ToolExecutor:
        return HandlerToolExecutor(
            self._registry,
            security_level=self._security_level,
            task_id=task_id,
        )

    def _tool_schemas(self) -> list[ToolSchema]:
        if not getattr(self._provider, "supports_tools", True):
            log.debug("agent_loop.tools_suppressed", provider=self._provider.name)
            return []
        return self._registry.list_schemas()

    # ─────────────────────────────────────────────────────────────────────────
    # Public
    # ─────────────────────────────────────────────────────────────────────────

    async def process_message(
        self,
        conversation_id: str,
        user_message: str,
        channel_type: ChannelType | str,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> AgentLoopResult:
        """
        Process one user message and return its result.

        Raises:
            TaskCancelledError: the cancellation token fired at a checkpoint.
                                The task record is marked killed first.
        """
        channel = channel_type.value if isinstance(channel_type, ChannelType) else str(channel_type)
        session = SessionState(start_time=self._clock())
        log.info(
            "agent_loop.message_received",
            conversation_id=conversation_id,
            channel_type=channel,
            chars=len(user_message),
        )

        try:
            return await self._run(session, conversation_id, user_message, channel, cancellation_token)

        except TaskCancelledError:
            session.state = LoopState.KILLED
            log.info("agent_loop.cancelled", task_id=session.task_id, round_trips=session.round_trips)
            await self._mark_task(session, TaskStatus.KILLED, _CANCELLED_REASON)
            raise

        except TerminalConditionError as e:
            outcome = TerminalState(e.outcome)
            session.state = LoopState(outcome.value)
            log.warning(
                "agent_loop.terminated",
                reason=str(e),
                outcome=outcome.value,
                error_type=type(e).__name__,
                task_id=session.task_id,
                round_trips=session.round_trips,
                cost_usd=session.total_cost_usd,
            )
            await self._mark_task(session, _STATUS_FOR_OUTCOME[outcome], str(e))
            return session.to_result(e.user_message, outcome)

        except Exception as e:
            session.state = LoopState.FAILED
            log.error(
                "agent_loop.unhandled_error",
                conversation_id=conversation_id,
                task_id=session.task_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await self._mark_task(session, TaskStatus.FAILED, f"{type(e).__name__}: {e}")
            return session.to_result(UNEXPECTED_ERROR_MESSAGE, TerminalState.FAILED)

        finally:
            clear_task()

    # ─────────────────────────────────────────────────────────────────────────
    # Pipeline
    # ─────────────────────────────────────────────────────────────────────────

    async def _run(
        self,
        session: SessionState,
        conversation_id: str,
        user_message: str,
        channel: str,
        token: Optional[CancellationToken],
    ) -> AgentLoopResult:
        cfg = self._config

        # ── Step 1: Input sanitization ────────────────────────────────────────
        session.state = LoopState.SANITIZING
        sanitization = check_for_injection(user_message, "user")
        if not sanitization.is_clean:
            raise InputValidationError(threats=sanitization.threat_types)

        # ── Step 2: Task bookkeeping ──────────────────────────────────────────
        task = await self._store.create_task(
            type="chat",
            description=user_message[:_DESCRIPTION_MAX_CHARS],
            channel_type=channel,
            channel_id=conversation_id,
            token_budget_usd=cfg.task_budget_usd,
        )
        session.task_id = task.id
        session.state = LoopState.TASK_CREATED
        bind_task(task.id, conversation_id, channel)
        await self._store.update_task_status(task.id, TaskStatus.RUNNING)

        # ── Step 3: Conversation continuity ───────────────────────────────────
        if await self._store.get_conversation(conversation_id) is None:
            await self._store.create_conversation(
                conversation_id=conversation_id,
                channel_type=channel,
                channel_id=conversation_id,
                task_id=task.id,
            )

        # ── Step 4: Monthly budget gate ───────────────────────────────────────
        monthly_spent = await self._store.get_monthly_total_cost()
        if not is_within_monthly_budget(monthly_spent, self._monthly_budget_usd, 0.0):
            raise BudgetExceededError("Monthly budget exceeded", user_message=MONTHLY_BUDGET_MESSAGE)
        session.state = LoopState.BUDGET_CHECKED

        # ── Step 5: Model routing ─────────────────────────────────────────────
        tier = classify_complexity(user_message, has_active_skill=False)
        selection = select_model(tier, self.enabled_providers)
        session.state = LoopState.MODEL_ROUTED
        log.info(
            "agent_loop.model_selected",
            model=selection.model,
            provider=selection.provider,
            tier=tier.value,
        )

        # ── Step 6: Context assembly ──────────────────────────────────────────
        context = await self._ctx.build_context(
            self._store,
            conversation_id,
            user_message,
            user_name=self._user_name,
            security_level=self._security_level,
        )
        await self._store.append_conversation_log(
            conversation_id,
            role="user",
            content=user_message,
            token_count=context.total_tokens,
        )
        session.state = LoopState.CONTEXT_BUILT

        # ── Step 7: Pre-call cost gate ────────────────────────────────────────
        estimate = calculate_cost(selection.model, context.total_tokens, _ROUND_ESTIMATE_TOKENS)
        if not can_afford(session.total_cost_usd, cfg.task_budget_usd, estimate):
            raise BudgetExceededError(
                "Task budget exceeded before first call",
                user_message=PRE_CALL_BUDGET_MESSAGE,
            )

        # ── Step 8: Round-trip loop ───────────────────────────────────────────
        return await self._round_trips(session, conversation_id, selection, context, token)

    async def _round_trips(
        self,
        session: SessionState,
        conversation_id: str,
        selection: ModelSelection,
        context: ContextPayload,
        token: Optional[CancellationToken],
    ) -> AgentLoopResult:
        cfg = self._config
        task_id = session.task_id or ""
        executor = self._executor_factory(task_id)
        options = ChatOptions(
            model=selection.model,
            max_tokens=MAX_OUTPUT_TOKENS,
            tools=self._tool_schemas(),
            system_prompt=context.system_prompt,
        )
        messages: list[ChatMessage] = list(context.messages)

        while session.round_trips < cfg.max_round_trips:
            self._checkpoint(token, task_id)

            elapsed_ms = (self._clock() - session.start_time) * 1000
            if elapsed_ms > cfg.max_duration_ms:
                raise TimeoutKillError("Max duration exceeded")

            if session.total_tokens > cfg.max_tokens_per_task:
                raise TokenLimitKillError("Max tokens exceeded")

            round_estimate = calculate_cost(
                selection.model, _ROUND_ESTIMATE_TOKENS, _ROUND_ESTIMATE_TOKENS,
            )
            if not can_afford(session.total_cost_usd, cfg.task_budget_usd, round_estimate):
                raise BudgetExceededError("Task budget exceeded")

            # ── LLM call ──────────────────────────────────────────────────────
            self._checkpoint(token, task_id)
            session.state = LoopState.AWAITING_MODEL
            try:
                response = await self._provider.chat(messages, options)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                session.consecutive_errors += 1
                log.error(
                    "agent_loop.llm_call_failed",
                    round_trips=session.round_trips,
                    consecutive_errors=session.consecutive_errors,
                    retryable=e.retryable if isinstance(e, ProviderError) else None,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if session.consecutive_errors >= cfg.max_consecutive_errors:
                    raise ConsecutiveErrorsError("Max consecutive errors") from e
                continue

            session.consecutive_errors = 0
            await self._account(session, selection, response)

            # ── Terminal stop reasons ─────────────────────────────────────────
            if response.stop_reason in (StopReason.END_TURN, StopReason.MAX_TOKENS):
                return await self._complete(
                    session, conversation_id, response, extract_response_text(response),
                )

            # ── Tool calls → execute, feed results back ───────────────────────
            if response.stop_reason == StopReason.TOOL_USE:
                session.state = LoopState.EXECUTING_TOOLS
                tool_use_blocks = response.tool_use_blocks
                messages.append(ChatMessage.assistant(response.content))
                results = await execute_tools(executor, tool_use_blocks, token)
                session.tool_call_count += len(tool_use_blocks)
                messages.append(ChatMessage.user(results))
                log.debug(
                    "agent_loop.tools_executed",
                    count=len(tool_use_blocks),
                    errors=sum(1 for r in results if r.is_error),
                )
                continue

            # ── Any other stop reason ends the turn ───────────────────────────
            text = extract_response_text(response) or COMPLETED_FALLBACK_MESSAGE
            return await self._complete(session, conversation_id, response, text)

        raise RoundTripLimitKillError("Max round trips exceeded")

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _checkpoint(token: Optional[CancellationToken], task_id: str) -> None:
        if token is not None:
            token.raise_if_cancelled(task_id)

    async def _account(
        self,
        session: SessionState,
        selection: ModelSelection,
        response: ChatResponse,
    ) -> None:
        """Add one successful call to the totals and persist its usage."""
        usage = response.usage
        call_cost = calculate_cost(
            selection.model, usage.input_tokens, usage.output_tokens, usage.cache_read_tokens,
        )
        session.round_trips += 1
        session.total_input_tokens += usage.input_tokens
        session.total_output_tokens += usage.output_tokens
        session.total_cost_usd += call_cost

        await self._store.record_token_usage(
            task_id=session.task_id,
            provider=self._provider.name,
            model=selection.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cached_tokens=usage.cache_read_tokens,
            cost_usd=call_cost,
            round_trip_number=session.round_trips,
        )

    async def _complete(
        self,
        session: SessionState,
        conversation_id: str,
        response: ChatResponse,
        text: str,
    ) -> AgentLoopResult:
        task_id = session.task_id or ""
        usage = response.usage

        await self._store.append_conversation_log(
            conversation_id,
            role="assistant",
            content=text,
            token_count=usage.output_tokens,
        )
        await self._store.increment_message_count(conversation_id, usage.total_tokens)
        await self._store.update_task_spend(task_id, session.total_cost_usd)
        await self._store.update_task_status(task_id, TaskStatus.COMPLETED)
        session.state = LoopState.COMPLETED

        trigger_summarization_if_needed(
            self._store,
            conversation_id,
            self._provider,
            task_spent_usd=session.total_cost_usd,
            task_budget_usd=self._config.task_budget_usd,
            threshold=self._summarization_threshold,
        )
        fire_and_forget(
            extract_key_facts_on_completion(self._store, conversation_id, task_id),
            label=f"key_facts:{conversation_id}",
        )

        log.info(
            "agent_loop.completed",
            round_trips=session.round_trips,
            tool_calls=session.tool_call_count,
            input_tokens=session.total_input_tokens,
            output_tokens=session.total_output_tokens,
            cost_usd=round(session.total_cost_usd, 6),
            ms=round((self._clock() - session.start_time) * 1000),
        )
        return session.to_result(text, TerminalState.COMPLETED)

    async def _mark_task(self, session: SessionState, status: TaskStatus, reason: str) -> None:
        """Best-effort terminal status write; a store failure here is only logged."""
        if session.task_id is None:
            return
        try:
            if session.total_cost_usd:
                await self._store.update_task_spend(session.task_id, session.total_cost_usd)
            await self._store.update_task_status(session.task_id, status, reason)
        except Exception as e:
            log.error(
                "agent_loop.task_status_update_failed",
                task_id=session.task_id,
                status=status.value,
                error=str(e),
            )

    # ─────────────────────────────────────────────────────────────────────────
    # Factory
    # ─────────────────────────────────────────────────────────────────────────

    @classmethod
    def from_settings(
        cls,
        settings,
        store: BaseStore,
        provider: BaseProvider,
        context_builder: Optional[ContextBuilder] = None,
        tool_registry: Optional[ToolRegistry] = None,
        tool_executor_factory: Optional[ToolExecutorFactory] = None,
    ) -> "AgentLoop":
        """Create an AgentLoop from the PocketClaw Settings object."""
        return cls(
            store=store,
            provider=provider,
            config=KillConditionConfig.from_settings(settings),
            user_name=settings.agent.user_name,
            security_level=settings.agent.security_level,
            monthly_budget_usd=settings.budget.monthly_budget_usd,
            context_builder=context_builder or ContextBuilder(
                history_max_chars=settings.context.history_max_chars,
            ),
            tool_registry=tool_registry,
            tool_executor_factory=tool_executor_factory,
            summarization_threshold=settings.context.summarization_threshold_tokens,
        )
