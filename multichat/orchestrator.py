"""
Conversation orchestration: broadcast fan-out, the request queue drain and the
autonomous round-robin dialogue.

All state changes happen on the event loop thread. Backend calls run on worker
threads and report streaming progress back through ``call_soon_threadsafe``.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .conversation import (
    ConversationSession,
    Message,
    ModelRef,
    Participant,
    ParticipantKey,
)
from .hosts import HostRegistry, UnknownHostError
from .llm import OllamaClient, OllamaError
from .prompts import (
    DEFAULT_ROLE,
    Attachment,
    ChatConfiguration,
    apply_chat_configuration,
    apply_output_length_limit,
    build_round_robin_prompt,
    flatten_attachments,
    resolve_mentions,
    role_instruction,
)
from .settings import SettingsManager
from .storage import SessionStore
from .tasks import QueuedRequest, RequestQueue, RequestRejected

logger = logging.getLogger("multichat.orchestrator")

USER_SPEAKER = "User"


class CancellationToken:
    """Cooperative stop flag checked at loop boundaries."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


@dataclass
class AutonomousRun:
    members: List[ParticipantKey]
    seed: str
    token: CancellationToken = field(default_factory=CancellationToken)
    index: int = 0
    turns: int = 0
    transcript: List[Tuple[str, str]] = field(default_factory=list)
    histories: Dict[ParticipantKey, List[Message]] = field(default_factory=dict)
    pending_interruption: Optional[str] = None
    speaker: Optional[ParticipantKey] = None

    def to_dict(self, session: ConversationSession) -> Dict[str, Any]:
        return {
            "active": not self.token.cancelled,
            "stopping": self.token.cancelled,
            "members": [str(key) for key in self.members],
            "index": self.index,
            "turns": self.turns,
            "speaker": session.display_name(self.speaker) if self.speaker else None,
            "pending_interruption": self.pending_interruption,
            "transcript": [
                {"speaker": speaker, "content": content} for speaker, content in self.transcript
            ],
        }


class Orchestrator:
    """
    Owns the conversation flow for the active session.

    Broadcast requests go through the bounded queue and are processed one at a
    time; autonomous mode suspends the queue until it is stopped.
    """

    def __init__(
        self,
        settings: SettingsManager,
        registry: HostRegistry,
        sessions: SessionStore,
        client: OllamaClient,
        queue: Optional[RequestQueue] = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.sessions = sessions
        self.client = client
        self.queue = queue or RequestQueue()
        self._run: Optional[AutonomousRun] = None
        self._run_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None

    @property
    def session(self) -> ConversationSession:
        return self.sessions.active

    @property
    def run(self) -> Optional[AutonomousRun]:
        return self._run

    @property
    def autonomous_active(self) -> bool:
        return self._run is not None and not self._run.token.cancelled

    @property
    def busy(self) -> bool:
        return self._run is not None or len(self.queue) > 0

    def load(self) -> None:
        if self.settings.flag("persist_data_locally"):
            self.sessions.load()

    # -- submission -------------------------------------------------------

    def submit(
        self,
        text: str,
        attachments: Sequence[Attachment] = (),
        targets: Optional[Sequence[ParticipantKey]] = None,
        autonomous: bool = False,
    ) -> Optional[QueuedRequest]:
        """
        Accept a user message.

        While autonomous mode runs the message becomes an interruption and
        ``None`` is returned; otherwise the queued request is returned.
        """
        attachments = tuple(attachment for attachment in attachments if not attachment.is_empty())
        if not text.strip() and not attachments:
            raise RequestRejected("Type a message or attach a file first.")
        run = self._run
        if run is not None and not run.token.cancelled:
            self._interrupt(run, text, attachments)
            return None

        session = self.session
        if targets is None:
            keys = session.keys()
        else:
            keys = [key for key in dict.fromkeys(targets) if key in session.participants]
        if not keys:
            raise RequestRejected("Select at least one model first.")
        selected, stripped = resolve_mentions(text, keys)
        content, _ = flatten_attachments(stripped, attachments)
        if not content:
            raise RequestRejected("The message is empty once mentions are removed.")
        if autonomous and len(selected) < 2:
            raise RequestRejected("Inter-model chat needs at least two models.")

        request = self.queue.enqueue(
            QueuedRequest(
                raw_input=text,
                target_keys=tuple(keys),
                attachments=attachments,
                autonomous_requested=autonomous,
            )
        )
        logger.info(
            "Queued request %s for %d models (autonomous=%s)", request.id, len(keys), autonomous
        )
        self._schedule_drain()
        return request

    def _interrupt(
        self, run: AutonomousRun, text: str, attachments: Tuple[Attachment, ...]
    ) -> None:
        if run.pending_interruption is not None:
            raise RequestRejected("An interruption is already waiting for the next turn.")
        content, _ = flatten_attachments(text, attachments)
        run.pending_interruption = content
        logger.info("Interruption queued for the next turn")

    def remove_request(self, request_id: str) -> QueuedRequest:
        return self.queue.remove(request_id)

    # -- queue drain ------------------------------------------------------

    def _schedule_drain(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._run is None:
            request = self.queue.begin_next()
            if request is None:
                return
            try:
                await self._process(request)
            except Exception:
                logger.exception("Request %s failed", request.id)
            finally:
                self.queue.finish(request.id)

    async def _process(self, request: QueuedRequest) -> None:
        session = self.session
        keys = [key for key in request.target_keys if key in session.participants]
        if not keys:
            return
        selected, stripped = resolve_mentions(request.raw_input, keys)
        content, images = flatten_attachments(stripped, request.attachments)

        if request.autonomous_requested:
            for key in selected:
                participant = session.get(key)
                if participant is not None:
                    session.put(participant.append(Message("user", content)))
            self._persist()
            if not self._start_run(content, selected):
                logger.warning("Request %s could not start inter-model chat", request.id)
            return

        logger.info("Broadcasting request %s to %d models", request.id, len(selected))
        await asyncio.gather(
            *(self._dispatch(session, key, content, images) for key in selected)
        )
        self._persist()

    async def _dispatch(
        self,
        session: ConversationSession,
        key: ParticipantKey,
        content: str,
        images: Sequence[str],
    ) -> None:
        participant = session.get(key)
        if participant is None:
            return
        config = self._chat_config()
        streaming = self.settings.flag("enable_message_streaming")
        history = participant.messages
        updated = participant.append(Message("user", content))
        if streaming:
            updated = updated.append(Message("assistant", ""))
        session.put(replace(updated, loading=True))

        messages = self._compose_messages(participant.role, history, content, images, config)
        reply = await self._call_backend(session, key, messages, config, streaming)
        self._settle(session, key, reply, placeholder=streaming)

    # -- backend calls ----------------------------------------------------

    def _chat_config(self) -> ChatConfiguration:
        return ChatConfiguration.from_settings(self.settings.settings.get("chat_config"))

    def _compose_messages(
        self,
        role: str,
        history: Iterable[Message],
        content: str,
        images: Sequence[str],
        config: ChatConfiguration,
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if self.settings.flag("enable_roles") and role != DEFAULT_ROLE:
            messages.append({"role": "system", "content": role_instruction(role)})
        messages.extend(message.to_dict() for message in history if message.content)
        final: Dict[str, Any] = {
            "role": "user",
            "content": apply_chat_configuration(content, config),
        }
        if images:
            final["images"] = list(images)
        messages.append(final)
        return messages

    async def _call_backend(
        self,
        session: ConversationSession,
        key: ParticipantKey,
        messages: List[Dict[str, Any]],
        config: ChatConfiguration,
        streaming: bool,
    ) -> Tuple[bool, str]:
        """Returns ``(ok, text)``; failures carry a ready-to-show error message."""
        try:
            base_url = self.registry.resolve(key.ref)
        except UnknownHostError:
            return False, f"Error: Could not get response from {key.model}. Host {key.host_id} is not configured."
        on_chunk = self._chunk_writer(session, key, config) if streaming else None
        try:
            reply = await asyncio.to_thread(
                self.client.chat,
                base_url,
                model=key.model,
                messages=messages,
                stream=streaming,
                on_chunk=on_chunk,
            )
        except OllamaError as exc:
            logger.warning("%s on %s failed: %s", key.model, base_url, exc)
            self.registry.mark_failed(key.host_id)
            return False, f"Error: Could not get response from {key.model}. {exc}"
        return True, apply_output_length_limit(reply, config)

    def _chunk_writer(
        self,
        session: ConversationSession,
        key: ParticipantKey,
        config: ChatConfiguration,
    ) -> Callable[[str], None]:
        loop = asyncio.get_running_loop()

        def write(text: str) -> None:
            loop.call_soon_threadsafe(
                self._write_partial, session, key, apply_output_length_limit(text, config)
            )

        return write

    def _write_partial(self, session: ConversationSession, key: ParticipantKey, text: str) -> None:
        participant = session.get(key)
        if participant is None or not participant.loading:
            return
        session.put(participant.with_last_assistant(text))

    def _settle(
        self,
        session: ConversationSession,
        key: ParticipantKey,
        reply: Tuple[bool, str],
        placeholder: bool,
    ) -> None:
        participant = session.get(key)
        if participant is None:
            # Removed while the call was in flight.
            return
        _, text = reply
        if placeholder:
            participant = participant.with_last_assistant(text)
        else:
            participant = participant.append(Message("assistant", text))
        session.put(replace(participant, loading=False))

    # -- autonomous mode --------------------------------------------------

    def start_autonomous(
        self,
        seed: Optional[str] = None,
        participants: Optional[Sequence[ParticipantKey]] = None,
    ) -> bool:
        if self.queue.processing_id is not None:
            logger.info("Inter-model chat waits for the current broadcast to finish")
            return False
        return self._start_run(seed, participants)

    def _start_run(
        self,
        seed: Optional[str],
        participants: Optional[Sequence[ParticipantKey]],
    ) -> bool:
        if self._run is not None:
            logger.info("Inter-model chat already running")
            return False
        session = self.session
        candidates = session.keys() if participants is None else participants
        members = [key for key in dict.fromkeys(candidates) if key in session.participants]
        if len(members) < 2:
            logger.info("Inter-model chat needs at least two models (got %d)", len(members))
            return False
        if seed and seed.strip():
            speaker, text = USER_SPEAKER, seed.strip()
        else:
            speaker, text = self._find_seed(session, members)
        if not text:
            logger.info("Inter-model chat has nothing to start from")
            return False

        run = AutonomousRun(members=members, seed=text)
        run.transcript.append((speaker, text))
        for key in members:
            run.histories[key] = [message for message in session.participants[key].messages if message.content]
        self._run = run
        self._run_task = asyncio.get_running_loop().create_task(self._run_autonomous(session, run))
        logger.info("Inter-model chat started with %d models", len(members))
        return True

    def stop_autonomous(self) -> bool:
        run = self._run
        if run is None or run.token.cancelled:
            return False
        run.token.cancel()
        run.pending_interruption = None
        logger.info("Inter-model chat stopping after %d turns", run.turns)
        return True

    def _find_seed(
        self, session: ConversationSession, members: Sequence[ParticipantKey]
    ) -> Tuple[str, str]:
        for key in members:
            content = session.participants[key].last_content("assistant")
            if content:
                return session.display_name(key), content
        for key in members:
            content = session.participants[key].last_content("user")
            if content:
                return USER_SPEAKER, content
        return USER_SPEAKER, ""

    async def _run_autonomous(self, session: ConversationSession, run: AutonomousRun) -> None:
        delay = float(self.settings.autonomous_option("turn_delay_seconds"))
        window = int(self.settings.autonomous_option("transcript_window"))
        try:
            while not run.token.cancelled and run.members:
                if run.pending_interruption is not None:
                    self._apply_interruption(session, run)
                    continue
                speaker = run.members[run.index]
                await self._autonomous_turn(session, run, speaker, window)
                if speaker in run.members:
                    run.index = (run.members.index(speaker) + 1) % len(run.members)
                await asyncio.sleep(delay)
        except Exception:
            logger.exception("Inter-model chat crashed")
        finally:
            run.token.cancel()
            run.speaker = None
            self._run = None
            self._persist()
            logger.info("Inter-model chat stopped after %d turns", run.turns)
            self._schedule_drain()

    def _apply_interruption(self, session: ConversationSession, run: AutonomousRun) -> None:
        text = run.pending_interruption or ""
        run.pending_interruption = None
        run.transcript.append((USER_SPEAKER, text))
        for key in run.members:
            run.histories.setdefault(key, []).append(Message("user", text))
            participant = session.get(key)
            if participant is not None:
                session.put(participant.append(Message("user", text)))
        run.seed = text
        self._persist()
        logger.info("Interruption applied to inter-model chat")

    async def _autonomous_turn(
        self,
        session: ConversationSession,
        run: AutonomousRun,
        key: ParticipantKey,
        window: int,
    ) -> None:
        participant = session.get(key)
        if participant is None:
            return
        run.speaker = key
        config = self._chat_config()
        streaming = self.settings.flag("enable_message_streaming")
        speaker_name = session.display_name(key)
        prompt = build_round_robin_prompt(
            [session.display_name(member) for member in run.members],
            run.transcript,
            speaker_name,
            window,
        )
        messages = self._compose_messages(
            participant.role, run.histories.get(key, []), prompt, (), config
        )
        if streaming:
            participant = participant.append(Message("assistant", ""))
        session.put(replace(participant, loading=True))

        ok, text = await self._call_backend(session, key, messages, config, streaming)
        if ok:
            run.transcript.append((speaker_name, text))
            if key in run.histories:
                run.histories[key].append(Message("assistant", text))
            run.seed = text
        run.turns += 1
        self._settle(session, key, (ok, text), placeholder=streaming)
        self._persist()

    def _drop_member(self, key: ParticipantKey) -> None:
        run = self._run
        if run is None or key not in run.members:
            return
        position = run.members.index(key)
        run.members = [member for member in run.members if member != key]
        run.histories.pop(key, None)
        if position < run.index:
            run.index -= 1
        if run.members:
            run.index %= len(run.members)
        if len(run.members) < 2:
            self.stop_autonomous()

    # -- participants -----------------------------------------------------

    def add_participant(
        self,
        ref: Optional[ModelRef] = None,
        role: Optional[str] = None,
        duplicate_of: Optional[ParticipantKey] = None,
    ) -> Participant:
        session = self.session
        source: Optional[Participant] = None
        if duplicate_of is not None:
            source = session.get(duplicate_of)
            if source is None:
                raise KeyError(str(duplicate_of))
            ref = duplicate_of.ref
        if ref is None:
            raise RequestRejected("Pick a model to add.")
        self.registry.get(ref.host_id)
        if not self.settings.flag("allow_same_model_multi_chat") and any(
            key.ref == ref for key in session.keys()
        ):
            raise RequestRejected(f"{ref.model} is already in this chat.")

        key = ParticipantKey(ref.host_id, ref.model, session.next_instance(ref))
        if role:
            label = self.sessions.remember_role(role)
        else:
            label = source.role if source else DEFAULT_ROLE
        participant = Participant(
            key=key,
            role=label,
            messages=source.messages if source else (),
        )
        session.put(participant)
        self._persist()
        logger.info("Added %s to session %s", key, session.id)
        return participant

    def remove_participant(self, key: ParticipantKey) -> None:
        session = self.session
        if key not in session.participants:
            raise KeyError(str(key))
        session.discard([key])
        self.queue.strip_participant(key)
        self._drop_member(key)
        self._persist()
        logger.info("Removed %s from session %s", key, session.id)

    def set_role(self, key: ParticipantKey, role: str) -> Participant:
        session = self.session
        participant = session.get(key)
        if participant is None:
            raise KeyError(str(key))
        updated = replace(participant, role=self.sessions.remember_role(role))
        session.put(updated)
        self._persist()
        return updated

    # -- hosts ------------------------------------------------------------

    def remove_host(self, host_id: str) -> None:
        self.registry.remove_host(host_id)
        removed = self.sessions.drop_host(host_id)
        for key in removed.get(self.sessions.active_id, []):
            self.queue.strip_participant(key)
            self._drop_member(key)
        self._persist()

    async def add_scanned_host(self, url: str) -> Dict[str, Any]:
        host = self.registry.add_host(url)
        status = await self.registry.test_connection(host.id)
        return {"id": host.id, "url": host.url, "status": status.value}

    # -- sessions ---------------------------------------------------------

    def new_session(self) -> ConversationSession:
        self._ensure_quiet("start a new chat")
        session = self.sessions.new_session()
        self._persist()
        return session

    def switch_session(self, session_id: str) -> ConversationSession:
        if session_id == self.sessions.active_id:
            return self.session
        self._ensure_quiet("switch chats")
        session = self.sessions.switch(session_id)
        self._persist()
        return session

    def delete_session(self, session_id: str) -> None:
        if session_id == self.sessions.active_id:
            self._ensure_quiet("delete the open chat")
        self.sessions.delete(session_id)
        self._persist()

    def _ensure_quiet(self, action: str) -> None:
        if self.busy:
            raise RequestRejected(f"Wait for the current replies to finish before you {action}.")

    # -- lifecycle --------------------------------------------------------

    def _persist(self) -> None:
        if not self.settings.flag("persist_data_locally"):
            return
        try:
            self.sessions.save()
        except OSError:
            logger.exception("Could not persist chat state")

    async def wait_idle(self) -> None:
        """Wait until the queue is drained and no inter-model chat is running."""
        while True:
            pending = [
                task
                for task in (self._drain_task, self._run_task)
                if task is not None and not task.done()
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        self.stop_autonomous()
        await self.wait_idle()

    def state(self) -> Dict[str, Any]:
        session = self.session
        participants = []
        for participant in session.participants.values():
            entry = participant.to_dict()
            entry["display_name"] = session.display_name(participant.key)
            participants.append(entry)
        active = session.to_dict()
        active["participants"] = participants
        return {
            "active_session": active,
            "sessions": [
                {
                    "id": item.id,
                    "title": item.title,
                    "created_at": item.created_at,
                    "updated_at": item.updated_at,
                }
                for item in self.sessions.sessions()
            ],
            "role_library": list(self.sessions.role_library),
            "queue": [
                item.to_dict(processing=item.id == self.queue.processing_id)
                for item in self.queue.snapshot()
            ],
            "autonomous": self._run.to_dict(session) if self._run else {"active": False},
            "hosts": [
                {**host.to_dict(), "status": self.registry.status(host.id).value}
                for host in self.registry.hosts()
            ],
        }
