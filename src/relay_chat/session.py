"""Turn orchestration: compose, persist, stream, reconcile."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

import httpx

from .assembler import StreamAssembler
from .client import StreamingCompletionClient
from .composer import MessageComposer
from .config import resolve_token
from .context import ContextWindow
from .events import (
    TURN_COMPLETED,
    TURN_FAILED,
    TURN_UPDATED,
    TURN_WARNING,
    EventBus,
)
from .exceptions import ConcurrencyError, NetworkError, PersistenceError, StreamCancelledError
from .models import (
    Attachment,
    CompletionSettings,
    Credentials,
    Message,
    StreamState,
    StreamStatus,
)
from .publisher import PersistencePublisher
from .state import TurnRegistry, TurnState
from .store import ConversationStore, InMemoryConversationStore, SqliteConversationStore
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnOutcome:
    """What one ``send`` produced.

    ``state`` is the terminal stream snapshot, or ``None`` when there was
    nothing to send. Persistence problems are collected in ``warnings``; they
    never turn a completed reply into a failure.
    """

    conversation_id: str
    user_message: Message | None = None
    assistant_message: Message | None = None
    state: StreamState | None = None
    warnings: tuple[PersistenceError, ...] = ()

    @property
    def sent(self) -> bool:
        return self.user_message is not None

    @property
    def ok(self) -> bool:
        return self.state is not None and self.state.status is StreamStatus.COMPLETE

    @property
    def content(self) -> str:
        return self.state.accumulated_content if self.state is not None else ""

    @property
    def error(self) -> BaseException | None:
        return self.state.error if self.state is not None else None


class ChatSession:
    """Run chat turns against the relay, one active turn per conversation."""

    def __init__(
        self,
        client: StreamingCompletionClient,
        store: ConversationStore,
        settings: CompletionSettings,
        credentials: Credentials | None,
        *,
        bus: EventBus | None = None,
        composer: MessageComposer | None = None,
        registry: TurnRegistry | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.publisher = PersistencePublisher(store)
        self.settings = settings
        self.credentials = credentials
        self.bus = bus or EventBus()
        self.composer = composer or MessageComposer()
        self.registry = registry or TurnRegistry()
        self.timeout_seconds = timeout_seconds
        self.tasks = TaskManager()
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._transcripts: dict[str, list[Message]] = {}

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        store: ConversationStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        environ: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> ChatSession:
        relay_cfg = config.get("relay", {})
        persistence_cfg = config.get("persistence", {})
        window = ContextWindow(
            max_history_messages=int(relay_cfg.get("max_history_messages", 200)),
            max_context_tokens=int(relay_cfg.get("max_context_tokens", 131_072)),
        )
        if store is None:
            if persistence_cfg.get("enabled", True):
                store = SqliteConversationStore(str(persistence_cfg["database_path"]))
            else:
                store = InMemoryConversationStore()
        token = resolve_token(dict(config), environ)
        return cls(
            StreamingCompletionClient(http_client, context_window=window),
            store,
            CompletionSettings.from_config(dict(config)),
            Credentials(token) if token else None,
            timeout_seconds=timeout_seconds,
        )

    async def aclose(self) -> None:
        await self.tasks.cancel_all()
        await self.client.aclose()

    def transcript(self, conversation_id: str) -> list[Message]:
        """Return the messages this session has seen for a conversation."""
        return list(self._transcripts.get(conversation_id, []))

    def _remember(self, conversation_id: str, message: Message) -> None:
        # Fallback history only; bounded like the outbound window.
        transcript = self._transcripts.setdefault(conversation_id, [])
        transcript.append(message)
        overflow = len(transcript) - self.client.context_window.max_history_messages
        if overflow > 0:
            del transcript[:overflow]

    async def send(
        self,
        conversation_id: str,
        text: str,
        attachments: Sequence[Attachment] = (),
    ) -> TurnOutcome:
        """Run one full turn and return its outcome.

        Raises ``AuthError`` before anything happens when there is no usable
        credential, and ``ConcurrencyError`` while another turn on the same
        conversation is still active. Network failures and cancellation do
        not raise; they come back as an errored ``state`` with the partial
        reply preserved.
        """
        credentials = self.client.ensure_credentials(self.credentials)
        await self.registry.begin(conversation_id)

        cancel_event = asyncio.Event()
        self._cancel_events[conversation_id] = cancel_event
        timer: asyncio.TimerHandle | None = None
        if self.timeout_seconds is not None:
            timer = asyncio.get_running_loop().call_later(
                self.timeout_seconds, self._expire, conversation_id, cancel_event
            )

        final_state = TurnState.ERROR
        try:
            outcome = await self._run_turn(
                conversation_id, text, attachments, credentials, cancel_event
            )
            if outcome.state is None or outcome.ok:
                final_state = TurnState.IDLE
            return outcome
        finally:
            if timer is not None:
                timer.cancel()
            if self._cancel_events.get(conversation_id) is cancel_event:
                del self._cancel_events[conversation_id]
            await self.registry.transition_to(conversation_id, final_state)

    async def cancel(self, conversation_id: str) -> bool:
        """Ask the active turn to stop; its partial reply is still persisted."""
        event = self._cancel_events.get(conversation_id)
        if event is None or event.is_set():
            return False
        await self.registry.transition_if(
            conversation_id, TurnState.STREAMING, TurnState.CANCELLING
        )
        LOGGER.info(
            "turn.cancel.requested",
            extra={"event": "turn.cancel.requested", "conversation_id": conversation_id},
        )
        event.set()
        return True

    def start(
        self,
        conversation_id: str,
        text: str,
        attachments: Sequence[Attachment] = (),
    ) -> asyncio.Task[TurnOutcome]:
        """Run ``send`` as a tracked background task."""
        name = f"turn:{conversation_id}"
        existing = self.tasks.get(name)
        if existing is not None and not existing.done():
            raise ConcurrencyError(
                f"Conversation {conversation_id} already has a turn in progress."
            )
        task = asyncio.create_task(
            self.send(conversation_id, text, attachments), name=name
        )
        self.tasks.add(task, name)
        return task

    async def abort(self, conversation_id: str) -> bool:
        """Hard-cancel a background turn started with ``start``."""
        return await self.tasks.cancel(f"turn:{conversation_id}")

    def _expire(self, conversation_id: str, cancel_event: asyncio.Event) -> None:
        if cancel_event.is_set():
            return
        LOGGER.warning(
            "turn.timeout",
            extra={
                "event": "turn.timeout",
                "conversation_id": conversation_id,
                "timeout_seconds": self.timeout_seconds,
            },
        )
        cancel_event.set()

    async def _warn(
        self,
        conversation_id: str,
        error: PersistenceError,
        warnings: list[PersistenceError],
        *,
        stage: str,
        state: StreamState | None = None,
    ) -> None:
        warnings.append(error)
        await self.bus.publish(TURN_WARNING, conversation_id, state, error=error, stage=stage)

    async def _history(
        self,
        conversation_id: str,
        message: Message,
        warnings: list[PersistenceError],
    ) -> list[Message]:
        try:
            history = await self.store.list(conversation_id)
        except PersistenceError as exc:
            await self._warn(conversation_id, exc, warnings, stage="history")
            history = self.transcript(conversation_id)
        if not history or history[-1].id != message.id:
            history = [item for item in history if item.id != message.id]
            history.append(message)
        return history

    async def _run_turn(
        self,
        conversation_id: str,
        text: str,
        attachments: Sequence[Attachment],
        credentials: Credentials,
        cancel_event: asyncio.Event,
    ) -> TurnOutcome:
        message = self.composer.compose(text, attachments)
        if message is None:
            LOGGER.debug(
                "turn.skipped.empty",
                extra={"event": "turn.skipped.empty", "conversation_id": conversation_id},
            )
            return TurnOutcome(conversation_id)

        warnings: list[PersistenceError] = []
        self._remember(conversation_id, message)
        LOGGER.info(
            "turn.start",
            extra={
                "event": "turn.start",
                "conversation_id": conversation_id,
                "message_id": message.id,
                "attachments": len(message.attachments),
            },
        )

        user_result = await self.publisher.publish_user(conversation_id, message)
        if user_result.error is not None:
            await self._warn(conversation_id, user_result.error, warnings, stage="user")
        history = await self._history(conversation_id, message, warnings)

        assembler = StreamAssembler(str(uuid4()))
        state = assembler.state

        async def on_update(_content: str) -> None:
            await self.bus.publish(TURN_UPDATED, conversation_id, assembler.state)

        async def on_complete(_content: str) -> None:
            await self.bus.publish(TURN_COMPLETED, conversation_id, assembler.state)

        async def on_error(_partial: str, error: BaseException) -> None:
            await self.bus.publish(TURN_FAILED, conversation_id, assembler.state, error=error)

        try:
            try:
                stream = await self.client.open(
                    history, self.settings, credentials, cancel_event
                )
            except (NetworkError, StreamCancelledError) as exc:
                state = state.failed(exc)
                await self.bus.publish(TURN_FAILED, conversation_id, state, error=exc)
            else:
                await assembler.consume(stream, on_update, on_complete, on_error)
                state = assembler.state
        except asyncio.CancelledError:
            if assembler.state.status.is_terminal:
                state = assembler.state
            elif not state.status.is_terminal:
                error = StreamCancelledError("Turn cancelled.")
                state = assembler.state.failed(error)
                await self.bus.publish(TURN_FAILED, conversation_id, state, error=error)
            await self._reconcile(conversation_id, message, state, warnings)
            raise

        return await self._reconcile(conversation_id, message, state, warnings)

    async def _reconcile(
        self,
        conversation_id: str,
        message: Message,
        state: StreamState,
        warnings: list[PersistenceError],
    ) -> TurnOutcome:
        result = await self.publisher.publish_assistant(
            conversation_id, state.accumulated_content, message_id=state.target_message_id
        )
        if result.error is not None:
            await self._warn(
                conversation_id, result.error, warnings, stage="assistant", state=state
            )
        self._remember(conversation_id, result.message)
        LOGGER.info(
            "turn.finished",
            extra={
                "event": "turn.finished",
                "conversation_id": conversation_id,
                "status": state.status.value,
                "error_type": type(state.error).__name__ if state.error else None,
                "chars": len(state.accumulated_content),
                "warnings": len(warnings),
            },
        )
        return TurnOutcome(
            conversation_id,
            user_message=message,
            assistant_message=result.message,
            state=state,
            warnings=tuple(warnings),
        )
