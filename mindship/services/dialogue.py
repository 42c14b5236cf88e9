"""Turn-based, cancellable voice intervention

Every trigger (manual actions, timers, finished captures, finished
playback, service errors) is a DialogueEvent fed to `dispatch`, the only
place where the dialogue state changes. Side effects of a state run on
entry; timers and the microphone are released on exit.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set, Tuple

from mindship.config.config import DialogueConfig
from mindship.models.dialogue import (
    ConversationTurn, DialogueEvent, DialogueSession, DialogueState, DriftContext, TurnRole
)
from mindship.services.capture import CaptureHandle, CaptureKind, CaptureManager
from mindship.services.clock import Clock, Timer, cancel_timer
from mindship.services.errors import (
    CaptureUnavailableError, FatalDialogueError, RecoverableDialogueError
)
from mindship.services.interfaces import (
    AudioPlayer, DialogueService, EventRecorder, SpeechSynthesizer, Transcriber, fire_and_forget
)

logger = logging.getLogger(__name__)

OWNER = "dialogue"
PENDING_USER_TEXT = "[Voice message]"

TRANSITIONS: Dict[Tuple[DialogueState, DialogueEvent], DialogueState] = {
    (DialogueState.IDLE, DialogueEvent.START): DialogueState.AWAITING_USER,
    (DialogueState.AWAITING_USER, DialogueEvent.RECORD): DialogueState.RECORDING,
    (DialogueState.AWAITING_USER, DialogueEvent.INACTIVITY_TIMEOUT): DialogueState.ENDED,
    (DialogueState.RECORDING, DialogueEvent.CAPTURE_FINISHED): DialogueState.PROCESSING,
    (DialogueState.RECORDING, DialogueEvent.RECOVERABLE_ERROR): DialogueState.AWAITING_USER,
    (DialogueState.RECORDING, DialogueEvent.INACTIVITY_TIMEOUT): DialogueState.ENDED,
    (DialogueState.PROCESSING, DialogueEvent.REPLY_READY): DialogueState.SPEAKING,
    (DialogueState.PROCESSING, DialogueEvent.RECOVERABLE_ERROR): DialogueState.AWAITING_USER,
    (DialogueState.SPEAKING, DialogueEvent.PLAYBACK_FINISHED): DialogueState.AWAITING_USER,
}

# Accepted from every non-terminal state
TERMINATING_EVENTS = (DialogueEvent.END, DialogueEvent.FATAL_ERROR)

DialogueListener = Callable[[DialogueSession, DialogueState, DialogueState], None]

class InterventionDialogueController:
    """Runs at most one voice intervention at a time"""

    def __init__(
        self,
        clock: Clock,
        capture: CaptureManager,
        transcriber: Transcriber,
        dialogue_service: DialogueService,
        synthesizer: SpeechSynthesizer,
        player: AudioPlayer,
        config: DialogueConfig,
        recorder: Optional[EventRecorder] = None,
    ):
        self.clock = clock
        self.capture = capture
        self.transcriber = transcriber
        self.dialogue_service = dialogue_service
        self.synthesizer = synthesizer
        self.player = player
        self.config = config
        self.recorder = recorder

        self.session: Optional[DialogueSession] = None
        self.consecutive_errors = 0
        self._listeners: List[DialogueListener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._settle_timer: Optional[Timer] = None
        self._inactivity_timer: Optional[Timer] = None
        self._mic: Optional[CaptureHandle] = None
        self._stop_requested: Optional[asyncio.Event] = None
        self._pending_audio: bytes = b""
        self._pending_reply: str = ""

    def subscribe(self, listener: DialogueListener) -> None:
        self._listeners.append(listener)

    @property
    def state(self) -> DialogueState:
        return self.session.state if self.session else DialogueState.IDLE

    @property
    def is_active(self) -> bool:
        return self.session is not None and self.session.is_active

    # External triggers

    def start(
        self,
        session_id: str,
        drift_context: DriftContext,
        opening_message: Optional[str] = None,
    ) -> DialogueSession:
        """Open a new intervention, superseding any active one"""
        if self.is_active:
            logger.info("New intervention requested, ending the current one")
            self.end("superseded")

        self.consecutive_errors = 0
        self.session = DialogueSession(
            session_id=session_id,
            drift_context=drift_context,
            auto_restart=self.config.auto_restart,
        )
        opening = self.session.add_turn(
            TurnRole.ASSISTANT,
            opening_message or self.config.opening_message,
            self.clock.now(),
        )
        self._persist_turn(self.session, opening)
        logger.info(
            f"Starting intervention {self.session.conversation_id} for session {session_id} "
            f"(cause={drift_context.cause.value if drift_context.cause else 'unknown'}, "
            f"drift={drift_context.drift_minutes:.1f} min)"
        )
        self.dispatch(DialogueEvent.START)
        return self.session

    def begin_recording(self) -> bool:
        """Manual trigger to start listening"""
        return self.dispatch(DialogueEvent.RECORD)

    def stop_and_send(self) -> bool:
        """Finish the current recording and send it"""
        if self.state != DialogueState.RECORDING or self._stop_requested is None:
            logger.warning(f"stop-and-send ignored in state {self.state.value}")
            return False
        self._stop_requested.set()
        return True

    def end(self, reason: str = "ended by user") -> bool:
        return self.dispatch(DialogueEvent.END, reason)

    def set_auto_restart(self, enabled: bool) -> None:
        """Applies to the running dialogue and every later one"""
        self.config = self.config.model_copy(update={"auto_restart": enabled})
        if self.session is not None:
            self.session.auto_restart = enabled
        logger.info(f"Auto-restart {'enabled' if enabled else 'disabled'}")

    async def shutdown(self) -> None:
        """End any dialogue and wait for its tasks to unwind"""
        if self.is_active:
            self.end("shutdown")
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Transition function

    def dispatch(self, event: DialogueEvent, reason: Optional[str] = None) -> bool:
        session = self.session
        if session is None or not session.is_active:
            logger.debug(f"Ignoring {event.value}: no active dialogue")
            return False

        old_state = session.state
        if event in TERMINATING_EVENTS:
            new_state = DialogueState.ENDED
        else:
            new_state = TRANSITIONS.get((old_state, event))
        if new_state is None:
            logger.warning(f"Ignoring {event.value} in state {old_state.value}")
            return False

        self._exit(old_state, event)
        session.state = new_state
        logger.info(
            f"Dialogue {old_state.value} -> {new_state.value} on {event.value}"
            f"{f' ({reason})' if reason else ''}"
        )
        self._enter(session, new_state, event, reason)

        for listener in self._listeners:
            try:
                listener(session, old_state, new_state)
            except Exception as e:
                logger.error(f"Dialogue listener failed: {e}", exc_info=True)
        return True

    def _exit(self, state: DialogueState, event: DialogueEvent) -> None:
        cancel_timer(self._settle_timer)
        self._settle_timer = None
        if state == DialogueState.RECORDING:
            self._release_mic()

    def _enter(
        self,
        session: DialogueSession,
        state: DialogueState,
        event: DialogueEvent,
        reason: Optional[str],
    ) -> None:
        if state == DialogueState.AWAITING_USER:
            self._enter_awaiting_user(session, event)
        elif state == DialogueState.RECORDING:
            self._stop_requested = asyncio.Event()
            self._spawn(self._record(session, self._stop_requested))
        elif state == DialogueState.PROCESSING:
            audio, self._pending_audio = self._pending_audio, b""
            self._spawn(self._process(session, audio))
        elif state == DialogueState.SPEAKING:
            text, self._pending_reply = self._pending_reply, ""
            turn = session.add_turn(TurnRole.ASSISTANT, text, self.clock.now())
            self._persist_turn(session, turn)
            self._spawn(self._speak(session, text))
        elif state == DialogueState.ENDED:
            self._enter_ended(session, event, reason)

    def _enter_awaiting_user(self, session: DialogueSession, event: DialogueEvent) -> None:
        # The ceiling runs from the moment we start waiting for the user to speak
        # and survives recording retries; only a completed exchange restarts it.
        # A ceiling that fired outside AwaitingUser was ignored, so arm a fresh one.
        ceiling = self._inactivity_timer
        if event in (DialogueEvent.START, DialogueEvent.PLAYBACK_FINISHED) or ceiling is None or not ceiling.active:
            cancel_timer(self._inactivity_timer)
            self._inactivity_timer = self.clock.call_later(
                self.config.inactivity_timeout_seconds,
                self.dispatch,
                DialogueEvent.INACTIVITY_TIMEOUT,
                "inactivity timeout",
            )

        if not session.auto_restart:
            logger.info("Auto-restart disabled, waiting for a manual trigger")
            return
        if event == DialogueEvent.RECOVERABLE_ERROR:
            delay = self.config.error_restart_delay_seconds
        else:
            delay = self.config.settle_delay_seconds
        self._settle_timer = self.clock.call_later(delay, self._auto_restart, session)

    def _auto_restart(self, session: DialogueSession) -> None:
        if self.session is not session or not session.auto_restart:
            return
        logger.info("Auto-restarting voice listening for continued conversation")
        self.dispatch(DialogueEvent.RECORD)

    def _enter_ended(self, session: DialogueSession, event: DialogueEvent, reason: Optional[str]) -> None:
        session.end_reason = reason or event.value
        cancel_timer(self._inactivity_timer)
        self._inactivity_timer = None
        if self._stop_requested is not None:
            self._stop_requested.set()
        try:
            self.player.stop()
        except Exception as e:
            logger.warning(f"Failed to stop playback: {e}")
        self._release_mic()
        self._cancel_tasks()
        self._pending_audio = b""
        self._pending_reply = ""
        if event == DialogueEvent.FATAL_ERROR:
            logger.error(f"Intervention ended: {session.end_reason}")
        else:
            logger.info(f"Intervention ended: {session.end_reason}")

    # Work performed inside states

    async def _record(self, session: DialogueSession, stop_requested: asyncio.Event) -> None:
        try:
            handle = self.capture.acquire(CaptureKind.MIC, OWNER)
        except CaptureUnavailableError as e:
            self.dispatch(DialogueEvent.FATAL_ERROR, f"microphone unavailable: {e}")
            return
        self._mic = handle
        chunks: List[bytes] = []

        collector = asyncio.create_task(self._collect(handle, chunks))
        stopper = asyncio.create_task(stop_requested.wait())
        try:
            await asyncio.wait({collector, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (collector, stopper):
                if not task.done():
                    task.cancel()
            await asyncio.gather(collector, stopper, return_exceptions=True)
            self._release_mic()

        if self.session is not session or session.state != DialogueState.RECORDING:
            return

        error = None
        if collector.done() and not collector.cancelled():
            error = collector.exception()
        if isinstance(error, (CaptureUnavailableError, FatalDialogueError)):
            self.dispatch(DialogueEvent.FATAL_ERROR, f"recording failed: {error}")
            return
        if error is not None:
            self._recoverable(f"recording failed: {error}")
            return

        self._pending_audio = b"".join(chunks)
        self.dispatch(DialogueEvent.CAPTURE_FINISHED)

    async def _collect(self, handle: CaptureHandle, chunks: List[bytes]) -> None:
        async for chunk in self.capture.stream(handle):
            chunks.append(chunk)
            self._spawn(self._submit_chunk(chunk))

    async def _submit_chunk(self, chunk: bytes) -> None:
        try:
            await self.transcriber.submit_chunk(chunk)
        except Exception as e:
            logger.warning(f"Failed to send audio chunk: {e}")

    async def _process(self, session: DialogueSession, audio: bytes) -> None:
        turn_number = session.turn_number + 1
        user_turn = ConversationTurn(
            turn_number=turn_number,
            role=TurnRole.USER,
            content=PENDING_USER_TEXT,
            timestamp=self.clock.now(),
        )
        history = list(session.turns)
        session.turns.append(user_turn)

        try:
            transcription = await self.transcriber.transcribe(audio)
            user_turn.content = transcription.text
            reply = await self.dialogue_service.converse(
                history,
                transcription.text,
                session.drift_context,
                session.remote_conversation_id,
            )
        except asyncio.CancelledError:
            raise
        except FatalDialogueError as e:
            self.dispatch(DialogueEvent.FATAL_ERROR, str(e))
            return
        except RecoverableDialogueError as e:
            self._discard_turn(session, user_turn)
            self._recoverable(str(e))
            return
        except Exception as e:
            logger.error(f"Unexpected dialogue failure: {e}", exc_info=True)
            self._discard_turn(session, user_turn)
            self._recoverable(str(e))
            return

        if self.session is not session or session.state != DialogueState.PROCESSING:
            return

        self.consecutive_errors = 0
        session.turn_number = turn_number
        if reply.conversation_id:
            session.remote_conversation_id = reply.conversation_id
        self._persist_turn(session, user_turn)

        # A completed exchange restarts the inactivity ceiling
        cancel_timer(self._inactivity_timer)
        self._inactivity_timer = None

        self._pending_reply = reply.assistant_text
        self.dispatch(DialogueEvent.REPLY_READY)

    async def _speak(self, session: DialogueSession, text: str) -> None:
        try:
            audio = await self.synthesizer.synthesize(text)
            await self.player.play(audio)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Playback failed, continuing: {e}")

        if self.session is session:
            self.dispatch(DialogueEvent.PLAYBACK_FINISHED)

    # Helpers

    def _recoverable(self, reason: str) -> None:
        self.consecutive_errors += 1
        if self.consecutive_errors >= self.config.max_consecutive_errors:
            self.dispatch(
                DialogueEvent.FATAL_ERROR,
                f"{self.consecutive_errors} consecutive errors, last: {reason}",
            )
            return
        self.dispatch(DialogueEvent.RECOVERABLE_ERROR, reason)

    @staticmethod
    def _discard_turn(session: DialogueSession, turn: ConversationTurn) -> None:
        if turn in session.turns:
            session.turns.remove(turn)

    def _persist_turn(self, session: DialogueSession, turn: ConversationTurn) -> None:
        if self.recorder is not None:
            fire_and_forget(
                "conversation turn",
                self.recorder.record_turn,
                session.session_id,
                session.conversation_id,
                turn,
            )

    def _release_mic(self) -> None:
        handle, self._mic = self._mic, None
        self.capture.release(handle)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Dialogue task failed: {task.exception()}")

    def _cancel_tasks(self) -> None:
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
