"""
Matrix Adapter

Connects to the Matrix homeserver via mautrix-python, listens for messages
in all joined/allowed rooms, and routes them to the conversational agent.
Each room is its own conversation.

Startup order:

  1. resolve credentials (stored session, configured token, or password login)
  2. build the client and, with encryption enabled, run the crypto bootstrap
     before the first sync
  3. start syncing and wait for the first successful sync (bounded)
  4. post-sync: optional own-device trust, historical key recovery,
     pending invites, proactive verification

Encrypted room events bypass mautrix's own decryption and go through the
decrypt retry pipeline, which hands every event it manages to decrypt to
the same ``_on_message`` entry point plaintext events use.

Reactions (m.reaction annotations) are forwarded to the agent as a one-line
note in the room's conversation.

Special commands handled directly (before reaching the agent):
  /new       - start a fresh conversation for the current room
  /verify    - ask the sender's devices to verify this bot's device
  /e2ee      - show encryption status
  /commands  - list all slash commands
"""

import asyncio
import base64 as _base64
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from mautrix.client import Client, InternalEventType
from mautrix.client.dispatcher import MembershipEventDispatcher
from mautrix.crypto.attachments import decrypt_attachment
from mautrix.errors import MUnknownToken
from mautrix.types import EventID, EventType, MessageType, RelationType, RoomID, UserID

from parley.backends.agent_client import AgentClient
from parley.e2ee.bootstrap import CryptoBootstrap
from parley.e2ee.decrypt_retry import DecryptRetryPipeline
from parley.e2ee.key_backup import KeyBackupManager
from parley.e2ee.types import E2EETimings, InitialSyncTimeout, VerificationSession
from parley.e2ee.verification import VerificationCallbacks, VerificationStateMachine
from parley.infra import database, paths
from parley.infra.session_store import SessionRecord, SessionStore
from parley.interfaces.formatting import markdown_to_html, strip_markdown

logger = logging.getLogger(__name__)

DEVICE_DISPLAY_NAME = "parley"

_MIME_TO_EXT = {"audio/ogg": ".ogg", "audio/mpeg": ".mp3", "audio/mp4": ".m4a",
                "audio/webm": ".webm", "audio/wav": ".wav", "audio/x-wav": ".wav"}

POSITIVE_REACTIONS = frozenset({"👍", "❤️", "👏", "🎉"})
NEGATIVE_REACTIONS = frozenset({"👎", "😢", "😔", "❌"})


# ---------------------------------------------------------------------------
# Config and inbound message
# ---------------------------------------------------------------------------

@dataclass
class MatrixConfig:
    homeserver: str
    user_id: str
    access_token: str = ""
    device_id: str = ""
    password: str = ""
    recovery_key: str = ""
    user_device_id: str = ""
    allowed_users: list[str] = field(default_factory=list)
    allowed_rooms: list[str] = field(default_factory=list)
    enable_encryption: bool = True
    auto_join: bool = True
    trust_own_devices: bool = False
    message_prefix: str = ""
    store_dir: str = str(paths.MATRIX_STORE_DIR)
    session_file: str = ""
    session_backups: int = 3
    initial_sync_timeout: float = 30.0

    @classmethod
    def from_dict(cls, raw: dict) -> "MatrixConfig":
        known = set(cls.__dataclass_fields__)
        kwargs = {k: v for k, v in raw.items() if k in known and v is not None}
        cfg = cls(**kwargs)
        if not cfg.session_file:
            cfg.session_file = str(Path(cfg.store_dir) / paths.SESSION_FILE_NAME)
        return cfg

    @property
    def crypto_store_path(self) -> Path:
        return Path(self.store_dir) / paths.CRYPTO_DB_NAME


@dataclass
class InboundMessage:
    """A room message reduced to what the agent needs."""
    room_id: str
    event_id: str
    sender: str
    text: str
    content: Optional[list[dict]] = None     # multimodal parts (images)
    reply_to: str = ""


class MatrixAdapter:
    """
    Runs as an asyncio task.  After construction, call ``run()``.
    ``send_message`` may be called from any task in the same event loop.
    """

    def __init__(
        self,
        config: MatrixConfig,
        agent: Optional[AgentClient],
        timings: Optional[E2EETimings] = None,
        whisper_client: Any = None,
        whisper_model: str = "",
        whisper_language: str = "",
    ) -> None:
        self._cfg = config
        self._agent = agent
        self._timings = timings or E2EETimings()
        self._client: Optional[Client] = None
        self._crypto = None                      # MautrixCryptoBackend, imported lazily
        self._bootstrap: Optional[CryptoBootstrap] = None
        self._pipeline: Optional[DecryptRetryPipeline] = None
        self._verification: Optional[VerificationStateMachine] = None
        self._sessions = SessionStore(Path(config.session_file), backups=config.session_backups)
        self._first_sync = asyncio.Event()
        self._running = False
        self._send_lock = asyncio.Lock()
        # Rooms where a /verify was issued, so SAS progress is reported back there.
        self._verify_rooms: dict[str, str] = {}
        self._whisper_client = whisper_client
        self._whisper_model = whisper_model
        self._whisper_language = whisper_language
        self._background_tasks: set[asyncio.Task] = set()

    @property
    def pipeline(self) -> Optional[DecryptRetryPipeline]:
        return self._pipeline

    @property
    def verification(self) -> Optional[VerificationStateMachine]:
        return self._verification

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_message(self, room_id: str, text: str,
                           _retries: int = 3, _delay: float = 2.0) -> Optional[str]:
        """Send a message to a room and return its event id.

        Auto-encrypts if the room has E2EE.  Retries on transient failures.
        """
        if self._client is None:
            logger.warning("send_message called before Matrix client is ready")
            return None
        text = f"{self._cfg.message_prefix}{text}" if self._cfg.message_prefix else text
        if not text.strip():
            return None

        last_exc: Optional[Exception] = None
        for attempt in range(1, _retries + 1):
            async with self._send_lock:
                try:
                    event_id = await self._client.send_text(
                        room_id=RoomID(room_id),
                        text=strip_markdown(text),
                        html=markdown_to_html(text),
                    )
                    return str(event_id)
                except MUnknownToken:
                    logger.error("Matrix send to %s: token expired, stopping sync loop", room_id)
                    self._client.stop()
                    return None
                except Exception as exc:  # noqa: BLE001
                    last_exc = exc
                    logger.warning(
                        "Matrix send to %s failed (attempt %d/%d): %s",
                        room_id, attempt, _retries, exc,
                    )
            if attempt < _retries:
                await asyncio.sleep(_delay * attempt)
        logger.error("Matrix send to %s failed after %d attempts: %s", room_id, _retries, last_exc)
        return None

    async def edit_message(self, room_id: str, event_id: str, text: str) -> Optional[str]:
        """Replace the content of an earlier message (``m.replace``)."""
        if self._client is None:
            return None
        new_content = {
            "msgtype": "m.text",
            "body": strip_markdown(text),
            "format": "org.matrix.custom.html",
            "formatted_body": markdown_to_html(text),
        }
        content = {
            **new_content,
            "body": f"* {new_content['body']}",
            "formatted_body": f"* {new_content['formatted_body']}",
            "m.new_content": new_content,
            "m.relates_to": {"rel_type": "m.replace", "event_id": event_id},
        }
        try:
            async with self._send_lock:
                new_id = await self._client.send_message_event(
                    RoomID(room_id), EventType.ROOM_MESSAGE, content,
                )
            return str(new_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Matrix edit of %s in %s failed: %s", event_id, room_id, exc)
            return None

    async def send_typing(self, room_id: str, typing: bool = True) -> None:
        """Send a typing notification.  Silently ignored if client not ready."""
        if self._client is None:
            return
        try:
            timeout = 30_000 if typing else 0
            await self._client.set_typing(RoomID(room_id), timeout=timeout)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Typing notification failed for %s: %s", room_id, exc)

    async def add_reaction(self, room_id: str, event_id: str, key: str) -> Optional[str]:
        if self._client is None:
            return None
        try:
            reaction_id = await self._client.react(RoomID(room_id), EventID(event_id), key)
            return str(reaction_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Reaction %s on %s failed: %s", key, event_id, exc)
            return None

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Connect and serve until ``stop()``.

        Raises :class:`CryptoInitError` or :class:`InitialSyncTimeout` when
        startup cannot complete.
        """
        self._running = True
        await self._resolve_credentials()
        try:
            await self._connect_and_serve()
        except asyncio.CancelledError:
            logger.info("Matrix task cancelled")
        except MUnknownToken:
            if not self._cfg.password:
                logger.error(
                    "Matrix access token is invalid or expired. Add 'password' to the "
                    "matrix section of config.yaml for automatic re-login, or replace "
                    "access_token and restart."
                )
                raise
            logger.info("Token expired, re-authenticating with stored password...")
            await self._cleanup()
            await self._login()
            await self._connect_and_serve()
        finally:
            await self._cleanup()

    def stop(self) -> None:
        self._running = False
        if self._client is not None:
            self._client.stop()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def _resolve_credentials(self) -> None:
        record = self._sessions.load()
        if record is not None and record.user_id != self._cfg.user_id:
            logger.warning(
                "Stored session belongs to %s, not %s; ignoring it",
                record.user_id, self._cfg.user_id,
            )
            record = None
        if record is None and not self._cfg.access_token and not self._cfg.password:
            record = self._sessions.restore_from_backup()

        if record is not None:
            self._cfg.access_token = record.access_token
            self._cfg.device_id = record.device_id or self._cfg.device_id
            logger.info("Using stored Matrix session (device %s)", self._cfg.device_id)
            return

        if self._cfg.access_token:
            if not self._cfg.device_id:
                raise ValueError(
                    "matrix.device_id is required with access_token.  Set 'password' "
                    "instead to let parley log in and keep its own device."
                )
            self._sessions.save(SessionRecord(
                user_id=self._cfg.user_id,
                device_id=self._cfg.device_id,
                access_token=self._cfg.access_token,
                homeserver=self._cfg.homeserver,
            ))
            return

        if self._cfg.password:
            await self._login()
            return

        raise ValueError("Matrix: no stored session, access_token or password configured")

    async def _login(self) -> None:
        """Login via the Matrix password API and persist the session.

        The known device id is sent along so a re-login keeps the same
        device and with it the crypto identity.
        """
        import aiohttp

        hs = self._cfg.homeserver.rstrip("/")
        url = f"{hs}/_matrix/client/v3/login"
        payload = {
            "type": "m.login.password",
            "identifier": {"type": "m.id.user", "user": self._cfg.user_id},
            "password": self._cfg.password,
            "initial_device_display_name": DEVICE_DISPLAY_NAME,
        }
        if self._cfg.device_id:
            payload["device_id"] = self._cfg.device_id
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload) as resp:
                data = await resp.json()

        if "access_token" not in data:
            raise RuntimeError(
                f"Matrix login failed: {data.get('error', 'unknown error')} "
                f"({data.get('errcode', '')})"
            )

        self._cfg.access_token = data["access_token"]
        self._cfg.device_id = data["device_id"]
        self._sessions.save(SessionRecord(
            user_id=data.get("user_id", self._cfg.user_id),
            device_id=self._cfg.device_id,
            access_token=self._cfg.access_token,
            homeserver=self._cfg.homeserver,
        ))
        logger.info("Login successful. device_id=%s", self._cfg.device_id)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _connect_and_serve(self) -> None:
        """Set up client + crypto, start sync loop.  Blocks until stop()."""
        client = self._setup_client()
        self._client = client
        if self._cfg.enable_encryption:
            await self._setup_crypto(client)
        else:
            logger.warning("Matrix: encryption disabled, encrypted rooms will be unreadable")

        self._first_sync.clear()
        client.ignore_initial_sync = True
        sync_task = asyncio.ensure_future(client.start(filter_data=None))
        waiter = asyncio.ensure_future(self._first_sync.wait())
        done, _ = await asyncio.wait(
            {sync_task, waiter},
            timeout=self._cfg.initial_sync_timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if sync_task in done:
            waiter.cancel()
            sync_task.result()
            return
        if waiter not in done:
            waiter.cancel()
            client.stop()
            raise InitialSyncTimeout(
                f"first sync did not complete within {self._cfg.initial_sync_timeout}s"
            )

        logger.info("Matrix connected%s. Listening.", " with E2EE" if self._crypto else "")
        self._spawn(self._after_first_sync(), "post-sync")
        await sync_task

    async def _cleanup(self) -> None:
        """Tear down client, pipeline and crypto store so a fresh connect can follow."""
        for task in list(self._background_tasks):
            task.cancel()
        if self._pipeline is not None:
            await self._pipeline.stop()
            self._pipeline = None
        if self._verification is not None:
            await self._verification.stop()
            self._verification = None
        if self._client is not None:
            self._client.stop()
            try:
                await self._client.api.session.close()
            except Exception:  # noqa: BLE001
                pass
            self._client = None
        if self._crypto is not None:
            await self._crypto.close()
            self._crypto = None

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------

    def _setup_client(self) -> Client:
        from parley.backends.mautrix_crypto import CryptoMemoryStateStore

        client = Client(
            mxid=UserID(self._cfg.user_id),
            device_id=self._cfg.device_id,
            base_url=self._cfg.homeserver,
            token=self._cfg.access_token,
            state_store=CryptoMemoryStateStore(),
        )

        # Translate m.room.member events into InternalEventType.* (JOIN, INVITE, LEAVE, ...)
        client.add_dispatcher(MembershipEventDispatcher)

        client.add_event_handler(EventType.ROOM_MESSAGE, self._on_message)
        client.add_event_handler(EventType.REACTION, self._on_reaction)
        client.add_event_handler(InternalEventType.INVITE, self._on_invite)
        client.add_event_handler(InternalEventType.SYNC_SUCCESSFUL, self._on_sync_successful)
        client.add_event_handler(InternalEventType.SYNC_ERRORED, self._on_sync_error)

        logger.info(
            "Running as device_id=%s, homeserver=%s",
            self._cfg.device_id, self._cfg.homeserver,
        )
        return client

    async def _setup_crypto(self, client: Client) -> None:
        from parley.backends.mautrix_crypto import MautrixCryptoBackend

        backend = MautrixCryptoBackend(
            client, self._cfg.user_id, self._cfg.device_id, timings=self._timings,
        )
        self._crypto = backend
        self._bootstrap = CryptoBootstrap(
            backend,
            own_user_id=self._cfg.user_id,
            own_device_id=self._cfg.device_id,
            store_path=str(self._cfg.crypto_store_path),
            recovery_key=self._cfg.recovery_key,
            timings=self._timings,
        )
        # Raises CryptoInitError; that aborts startup.
        await self._bootstrap.run()

        self._pipeline = DecryptRetryPipeline(backend, self._on_decrypted, timings=self._timings)
        self._verification = VerificationStateMachine(
            backend,
            own_user_id=self._cfg.user_id,
            own_device_id=self._cfg.device_id,
            timings=self._timings,
            callbacks=VerificationCallbacks(
                on_show_sas=self._on_sas_shown,
                on_complete=self._on_verification_complete,
                on_cancel=self._on_verification_cancelled,
                on_error=self._on_verification_error,
            ),
        )
        backend.on_verification_request(self._on_verification_request)
        if backend.capabilities.room_keys_updated_callback:
            backend.on_room_keys_updated(self._on_room_keys_updated)

        client.add_event_handler(EventType.ROOM_ENCRYPTED, self._on_encrypted)
        client.add_event_handler(EventType.ROOM_KEY, self._on_room_key)
        client.add_event_handler(EventType.FORWARDED_ROOM_KEY, self._on_room_key)

    async def _after_first_sync(self) -> None:
        """Steps that need a populated device list and room state."""
        if self._bootstrap is not None:
            if self._cfg.trust_own_devices:
                await self._bootstrap.trust_own_devices()
            manager = KeyBackupManager(
                self._crypto,
                store_dir=Path(self._cfg.store_dir),
                recovery_key=self._cfg.recovery_key,
                on_keys_imported=self._on_keys_imported,
            )
            await manager.restore_all(self._bootstrap.state)

        if self._cfg.auto_join:
            await self._accept_pending_invites()

        if self._verification is not None and self._cfg.allowed_users:
            await asyncio.sleep(self._timings.device_list_settle_seconds)
            await self._proactive_verification()

    async def _proactive_verification(self) -> None:
        """Ask the operator's devices to verify this bot.

        With ``user_device_id`` set, only that device of the first allowed
        user is asked; otherwise every allowed user's devices are discovered.
        """
        if self._cfg.user_device_id:
            await self._verification.verify_user_devices(
                self._cfg.allowed_users[0], self._cfg.user_device_id,
            )
            return
        for user_id in self._cfg.allowed_users:
            if user_id == self._cfg.user_id:
                continue
            await self._verification.verify_user_devices(user_id)

    # ------------------------------------------------------------------
    # Sync / crypto events
    # ------------------------------------------------------------------

    async def _on_sync_successful(self, *_args: object, **_kw: object) -> None:
        if not self._first_sync.is_set():
            logger.info("Matrix: first sync complete")
            self._first_sync.set()

    async def _on_sync_error(self, error=None, **_kwargs) -> None:
        """Log sync errors.  mautrix handles retry/backoff internally."""
        logger.warning("Matrix sync error: %s", error)

    async def _on_encrypted(self, evt) -> None:
        if self._pipeline is None:
            return
        if str(evt.sender) == self._cfg.user_id:
            return
        if not self._is_user_allowed(str(evt.sender)) or not self._is_room_allowed(str(evt.room_id)):
            return
        try:
            await self._pipeline.handle_encrypted(evt)
        except Exception:  # noqa: BLE001
            logger.exception("UTD: handling encrypted event %s failed", evt.event_id)

    async def _on_room_key(self, evt) -> None:
        if self._pipeline is not None:
            self._pipeline.request_sweep(f"{evt.type} from {evt.sender}")

    def _on_room_keys_updated(self) -> None:
        if self._pipeline is not None:
            self._pipeline.request_sweep("room keys updated")

    async def _on_keys_imported(self, count: int) -> None:
        if self._pipeline is not None:
            await self._pipeline.sweep(f"{count} key(s) imported")

    async def _on_decrypted(self, evt) -> None:
        if evt.type == EventType.ROOM_MESSAGE:
            await self._on_message(evt)
        elif evt.type == EventType.REACTION:
            await self._on_reaction(evt)
        else:
            logger.debug("Decrypted %s event %s not handled", evt.type, evt.event_id)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _on_verification_request(self, request) -> None:
        if not self._is_user_allowed(str(request.other_user_id)):
            logger.warning("SAS: ignoring verification request from non-allowed user %s", request.other_user_id)
            self._spawn(request.cancel("m.user", "Not allowed"), "sas-reject")
            return
        self._verification.handle_verification_request(request)

    async def _on_sas_shown(self, session: VerificationSession, emojis: list[str]) -> None:
        room_id = self._verify_rooms.get(session.user_id)
        if room_id:
            await self.send_message(
                room_id,
                f"Verification with `{session.device_id}`: compare these emoji\n\n"
                + "  ".join(emojis)
                + "\n\nThe bot confirms automatically.",
            )

    async def _on_verification_complete(self, session: VerificationSession) -> None:
        room_id = self._verify_rooms.pop(session.user_id, None)
        if room_id:
            await self.send_message(room_id, f"Device `{session.device_id}` verified.")

    async def _on_verification_cancelled(self, session: VerificationSession, reason: str) -> None:
        room_id = self._verify_rooms.pop(session.user_id, None)
        if room_id:
            await self.send_message(room_id, f"Verification with `{session.device_id}` cancelled: {reason}")

    def _on_verification_error(self, session: Optional[VerificationSession], exc: Exception) -> None:
        logger.warning("SAS: error in verification %s: %s", session.key if session else "-", exc)

    # ------------------------------------------------------------------
    # Room messages
    # ------------------------------------------------------------------

    async def _on_message(self, evt) -> None:
        """Handle m.room.message events, plaintext or decrypted."""
        try:
            await self._handle_message(evt)
        except Exception:  # noqa: BLE001
            logger.exception("Handling message %s failed", getattr(evt, "event_id", "?"))

    async def _handle_message(self, evt) -> None:
        sender = str(evt.sender)
        room_id = str(evt.room_id)
        if sender == self._cfg.user_id:
            return
        if not self._is_user_allowed(sender) or not self._is_room_allowed(room_id):
            return

        msgtype = getattr(evt.content, "msgtype", None)
        if msgtype not in (MessageType.TEXT, MessageType.NOTICE, MessageType.IMAGE, MessageType.AUDIO):
            return
        if evt.content.get_edit():
            return

        await self._send_read_receipt(room_id, evt.event_id)

        reply_to = evt.content.get_reply_to()
        reply_prefix = await self._reply_context(room_id, reply_to) if reply_to else ""

        base = dict(room_id=room_id, event_id=str(evt.event_id), sender=sender,
                    reply_to=str(reply_to or ""))

        if msgtype == MessageType.IMAGE:
            try:
                data = await self._download_media(evt)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to download image from %s", sender)
                return
            mimetype = getattr(getattr(evt.content, "info", None), "mimetype", "image/png") or "image/png"
            caption = (evt.content.body or "").strip()
            parts: list[dict] = []
            if reply_prefix or caption:
                parts.append({"type": "text", "text": reply_prefix + caption})
            parts.append({
                "type": "image_url",
                "image_url": {"url": f"data:{mimetype};base64,{_base64.b64encode(data).decode()}"},
            })
            logger.info("Received image from %s in %s", sender, room_id)
            await self._dispatch(InboundMessage(text=reply_prefix + (caption or "[image attached]"),
                                                content=parts, **base))
            return

        if msgtype == MessageType.AUDIO:
            text = await self._transcribe(evt)
            await self._dispatch(InboundMessage(text=reply_prefix + text, **base))
            return

        text = (evt.content.body or "").strip()
        if not text:
            return
        logger.info("Received message from %s in %s: %s", sender, room_id, text[:100])
        await self._dispatch(InboundMessage(text=reply_prefix + text, **base))

    async def _on_reaction(self, evt) -> None:
        """Forward m.reaction annotations to the agent as a short note."""
        try:
            await self._handle_reaction(evt)
        except Exception:  # noqa: BLE001
            logger.exception("Handling reaction %s failed", getattr(evt, "event_id", "?"))

    async def _handle_reaction(self, evt) -> None:
        sender = str(evt.sender)
        room_id = str(evt.room_id)
        if sender == self._cfg.user_id:
            return
        if not self._is_user_allowed(sender) or not self._is_room_allowed(room_id):
            return
        relates_to = getattr(evt.content, "relates_to", None)
        if relates_to is None or relates_to.rel_type != RelationType.ANNOTATION or not relates_to.key:
            return
        key = relates_to.key
        target = str(relates_to.event_id)
        logger.info("Reaction %s on %s from %s", key, target, sender)

        mapping = await database.async_call(database.get_message_mapping, target)
        if mapping and mapping["sender"] == self._cfg.user_id:
            if key in POSITIVE_REACTIONS:
                logger.info("Positive feedback from %s on reply %s", sender, target)
            elif key in NEGATIVE_REACTIONS:
                logger.info("Negative feedback from %s on reply %s", sender, target)

        await self._dispatch(InboundMessage(
            room_id=room_id,
            event_id=str(evt.event_id),
            sender=sender,
            text=f"🎭 {sender} reacted with: {key}",
            reply_to=target,
        ))

    async def _reply_context(self, room_id: str, reply_to) -> str:
        cached = await database.async_call(database.get_audio_text, str(reply_to))
        if cached:
            return f"> [voice]: {cached}\n>\n"
        try:
            orig = await self._client.get_event(RoomID(room_id), reply_to)
            if orig.type == EventType.ROOM_ENCRYPTED and self._crypto is not None:
                orig = await self._crypto.decrypt_event(orig) or orig
            body = getattr(getattr(orig, "content", None), "body", None) or ""
            return f"> {orig.sender}: {body}\n>\n"
        except Exception:  # noqa: BLE001
            logger.debug("Could not fetch replied-to event %s", reply_to)
            return ""

    async def _download_media(self, evt) -> bytes:
        """Download media from a Matrix event, handling E2EE decryption."""
        if evt.content.file:
            data = await self._client.download_media(evt.content.file.url)
            return decrypt_attachment(
                data,
                evt.content.file.key.key,
                evt.content.file.hashes["sha256"],
                evt.content.file.iv,
            )
        return await self._client.download_media(evt.content.url)

    async def _transcribe(self, evt) -> str:
        """Save a voice message and return its transcript (or a placeholder)."""
        try:
            data = await self._download_media(evt)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to download audio from %s", evt.sender)
            return "[Voice message received but could not be downloaded]"

        # Prefer explicit mimetype, fall back to body suffix, then .ogg.
        mimetype = getattr(getattr(evt.content, "info", None), "mimetype", None) or ""
        ext = _MIME_TO_EXT.get(mimetype.split(";")[0].strip())
        if not ext:
            ext = Path(evt.content.body or "").suffix or ".ogg"
        filename = f"{evt.event_id}{ext}".replace("$", "").replace(":", "_")
        voice_path = paths.VOICE_DIR / filename
        try:
            paths.VOICE_DIR.mkdir(parents=True, exist_ok=True)
            voice_path.write_bytes(data)
        except OSError:
            logger.exception("Failed to save voice message to %s", voice_path)

        if self._whisper_client is None:
            return f"[Voice message received: {voice_path}]"
        try:
            from openai import NOT_GIVEN
            resp = await self._whisper_client.audio.transcriptions.create(
                file=(filename, data),
                model=self._whisper_model,
                language=self._whisper_language or NOT_GIVEN,
                timeout=60.0,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Whisper transcription failed for %s, falling back to placeholder", voice_path)
            return f"[Voice message received: {voice_path}]"
        transcript = (resp.text or "").strip()
        if not transcript:
            logger.warning("Whisper returned empty transcript for %s", voice_path)
            return "[Voice message received, transcription was empty]"
        logger.info("Whisper transcript (%s): %s", evt.sender, transcript[:120])
        await database.async_call(
            database.store_audio_message, str(evt.event_id), transcript, "", str(evt.room_id),
        )
        return f"[Transcribed voice message] {transcript}"

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, msg: InboundMessage) -> None:
        if msg.content is None and msg.text.startswith("/"):
            if await self._handle_command(msg):
                return

        if self._agent is None:
            logger.warning("No agent configured, dropping message %s", msg.event_id)
            return

        conversation_id = await database.async_call(database.get_or_create_conversation, msg.room_id)
        await database.async_call(
            database.store_message_mapping, msg.event_id, conversation_id, msg.sender,
            msg.room_id, msg.reply_to,
        )
        message: Union[str, list[dict]] = msg.content if msg.content is not None else msg.text

        typing_task = asyncio.create_task(self._typing_loop(msg.room_id), name=f"typing_{msg.room_id}")
        try:
            reply = await self._agent.reply(conversation_id, message)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Agent failed to answer %s", msg.event_id)
            reply = f"Sorry, something went wrong: {exc}"
        finally:
            typing_task.cancel()
            try:
                await typing_task
            except asyncio.CancelledError:
                pass
            await self.send_typing(msg.room_id, False)

        if not reply:
            return
        reply_id = await self.send_message(msg.room_id, reply)
        if reply_id:
            await database.async_call(
                database.store_message_mapping, reply_id, conversation_id,
                self._cfg.user_id, msg.room_id, msg.event_id,
            )

    async def _handle_command(self, msg: InboundMessage) -> bool:
        command = msg.text.split()[0]
        if command == "/new":
            await database.async_call(database.reset_conversation, msg.room_id)
            await self.send_message(msg.room_id, "Session reset. Starting fresh conversation.")
            return True

        if command == "/verify":
            if self._verification is None:
                await self.send_message(msg.room_id, "E2EE not available.")
                return True
            self._verify_rooms[msg.sender] = msg.room_id
            await self.send_message(msg.room_id, "Sending verification request to your devices...")
            requests = await self._verification.verify_user_devices(msg.sender)
            if not requests:
                self._verify_rooms.pop(msg.sender, None)
                await self.send_message(msg.room_id, "No unverified devices found.")
            return True

        if command == "/e2ee":
            await self.send_message(msg.room_id, self._e2ee_status())
            return True

        if command == "/commands":
            await self.send_message(
                msg.room_id,
                "**Slash Commands**\n\n"
                "- `/new`: start a fresh conversation in this room\n"
                "- `/verify`: ask your devices to verify this bot\n"
                "- `/e2ee`: show encryption status\n"
                "- `/commands`: show this list",
            )
            return True
        return False

    def _e2ee_status(self) -> str:
        if self._bootstrap is None:
            return "E2EE is disabled."
        state = self._bootstrap.state
        caps = ", ".join(k for k, v in state.capabilities.as_dict().items() if v) or "none"
        lines = [
            f"**E2EE status** (device `{self._cfg.device_id}`)",
            f"- initialized: {state.initialized}",
            f"- keys uploaded: {state.keys_uploaded}",
            f"- secret storage: {state.secret_storage_ready}",
            f"- cross-signing: {state.cross_signing_ready}",
            f"- trust cross-signed devices: {state.trust_on_first_use}",
            f"- key backup: {state.backup_version or 'none'}",
            f"- capabilities: {caps}",
        ]
        if self._pipeline is not None:
            lines.append(f"- undecrypted events pending: {self._pipeline.pending_count}")
        if self._verification is not None:
            lines.append(f"- active verifications: {self._verification.active_count}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def _on_invite(self, evt) -> None:
        """Auto-join rooms when invited by an allowed user."""
        if not self._cfg.auto_join:
            return
        sender = str(evt.sender)
        room_id = str(evt.room_id)

        if not self._is_user_allowed(sender):
            logger.warning("Rejecting invite from non-allowed user %s to %s", sender, room_id)
            return
        if not self._is_room_allowed(room_id):
            logger.warning("Rejecting invite to non-allowed room %s from %s", room_id, sender)
            return

        logger.info("Accepting invite from %s to %s", sender, room_id)
        try:
            await self._client.join_room_by_id(RoomID(room_id))
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to join room %s: %s", room_id, exc)

    async def _accept_pending_invites(self) -> None:
        """Accept room invites that were pending at startup.

        ignore_initial_sync=True skips the first sync's events, so invites
        that arrived while offline never reach _on_invite.  A one-shot
        snapshot sync with a minimal filter finds them.
        """
        if self._client is None:
            return
        try:
            from mautrix.types import FilterID
            _filter = FilterID(
                '{"presence":{"not_types":["*"]},'
                '"account_data":{"not_types":["*"]},'
                '"room":{"state":{"not_types":["*"]},'
                '"timeline":{"limit":0},'
                '"ephemeral":{"not_types":["*"]}}}'
            )
            raw = await self._client.sync(timeout=0, filter_id=_filter)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Startup invite scan failed: %s", exc)
            return

        invited: dict = raw.get("rooms", {}).get("invite", {}) if isinstance(raw, dict) else {}
        if not invited:
            return

        logger.info("Found %d pending invite(s) at startup", len(invited))
        for room_id_str, room_data in invited.items():
            sender: Optional[str] = None
            for ev in room_data.get("invite_state", {}).get("events", []):
                if ev.get("type") == "m.room.member" and ev.get("state_key") == self._cfg.user_id:
                    sender = ev.get("sender")
                    break
            if sender and not self._is_user_allowed(sender):
                logger.warning("Startup: rejecting invite to %s from non-allowed user %s", room_id_str, sender)
                continue
            if not self._is_room_allowed(room_id_str):
                logger.warning("Startup: rejecting invite to non-allowed room %s", room_id_str)
                continue
            logger.info("Startup: accepting pending invite to %s (inviter: %s)", room_id_str, sender or "unknown")
            try:
                await self._client.join_room_by_id(RoomID(room_id_str))
            except Exception as exc:  # noqa: BLE001
                logger.error("Startup: failed to join %s: %s", room_id_str, exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _typing_loop(self, room_id: str) -> None:
        """Refresh the typing indicator every 25 seconds (server timeout is 30 s)."""
        try:
            while True:
                await self.send_typing(room_id, True)
                await asyncio.sleep(25)
        except asyncio.CancelledError:
            pass

    async def _send_read_receipt(self, room_id: str, event_id) -> None:
        """Mark an event as read so the sender sees it was received."""
        if self._client is None:
            return
        try:
            await self._client.send_receipt(RoomID(room_id), event_id, "m.read")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Read receipt failed for %s/%s: %s", room_id, event_id, exc)

    def _is_user_allowed(self, user_id: str) -> bool:
        """Check if a user is in the allowed_users list (empty = allow all)."""
        if not self._cfg.allowed_users:
            return True
        return user_id in self._cfg.allowed_users

    def _is_room_allowed(self, room_id: str) -> bool:
        if not self._cfg.allowed_rooms:
            return True
        return room_id in self._cfg.allowed_rooms

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task
