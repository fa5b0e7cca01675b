"""
Session handshake state machine.

A session is created when a connection is requested and lives until the
transport drops or the caller closes it:

    Connecting -> AwaitingPeerKey -> Ready -> Closed

Transport events are queued per session and dispatched one at a time
against the current state. Each state is its own type carrying only the
key material valid in that state, so a shared key cannot be used before
the peer key has arrived.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from .cipher import CipherSession, EncryptedEnvelope
from .errors import (
    AuthenticationFailure,
    CryptoError,
    FrameError,
    InvalidKeyEncoding,
    SecureChatError,
    SessionClosed,
    SessionNotReady,
    TransportError,
)
from .frames import DataFrame, KeyFrame, decode_frame, encode_frame
from .key_agreement import KeyAgreement, Keypair


logger = logging.getLogger(__name__)


class SessionState(Enum):
    CONNECTING = "connecting"
    AWAITING_PEER_KEY = "awaiting-peer-key"
    READY = "ready"
    CLOSED = "closed"


# Coarse connection status shown to the user
STATUS_CONNECTING = "connecting"
STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"


@dataclass(frozen=True)
class Connecting:
    keypair: Keypair
    state = SessionState.CONNECTING
    status = STATUS_CONNECTING


@dataclass(frozen=True)
class AwaitingPeerKey:
    keypair: Keypair
    state = SessionState.AWAITING_PEER_KEY
    status = STATUS_ONLINE


@dataclass(frozen=True)
class Ready:
    keypair: Keypair
    cipher: CipherSession = field(repr=False)
    state = SessionState.READY
    status = STATUS_ONLINE


@dataclass(frozen=True)
class Closed:
    error: Optional[Exception] = None
    state = SessionState.CLOSED
    status = STATUS_OFFLINE


Phase = Union[Connecting, AwaitingPeerKey, Ready, Closed]

_NEXT = {
    Connecting: (AwaitingPeerKey, Closed),
    AwaitingPeerKey: (Ready, Closed),
    Ready: (Closed,),
    Closed: (),
}


@dataclass(frozen=True)
class TransportConnected:
    pass


@dataclass(frozen=True)
class FrameReceived:
    data: Union[str, bytes]


@dataclass(frozen=True)
class TransportDisconnected:
    error: Optional[Exception] = None


Event = Union[TransportConnected, FrameReceived, TransportDisconnected]


class Transport(ABC):
    """
    Message-oriented duplex channel to the relay.

    Implementations report back to the session with connected(),
    frame_received() and disconnected().
    """

    @abstractmethod
    async def open(self, session: "SessionHandshake") -> None:
        """Start connecting; events are delivered to `session`"""

    @abstractmethod
    async def send(self, data: str) -> None:
        """Send one frame. Raises TransportError on failure."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Must be safe to call more than once."""


class SessionListener:
    """Callbacks from a session to the surrounding application. All optional."""

    def on_status(self, status: str) -> None:
        pass

    def on_ready(self) -> None:
        pass

    def on_plaintext(self, text: str) -> None:
        pass

    def on_error(self, error: SecureChatError) -> None:
        pass

    def on_closed(self, error: Optional[Exception]) -> None:
        pass


class SessionHandshake:
    """
    One end-to-end encrypted session with one peer over one connection.

    Creating the session generates its ephemeral keypair; a reconnect must
    create a new instance, never reuse a closed one.
    """

    def __init__(
        self,
        transport: Transport,
        listener: Optional[SessionListener] = None,
        key_agreement: Optional[KeyAgreement] = None,
        close_on_invalid_key: bool = False
    ):
        """
        Args:
            transport: Channel to the relay
            listener: Receives status, plaintext and lifecycle callbacks
            key_agreement: Derivation settings shared with the peer
            close_on_invalid_key: Close the session when the peer key is
                malformed instead of waiting for a valid one

        Raises:
            KeyGenerationFailure: If the keypair cannot be generated
        """
        self.transport = transport
        self.listener = listener or SessionListener()
        self.key_agreement = key_agreement or KeyAgreement()
        self.close_on_invalid_key = close_on_invalid_key
        self._events: "asyncio.Queue[Optional[Event]]" = asyncio.Queue()
        self._phase: Phase = Connecting(keypair=self.key_agreement.generate())

    @property
    def state(self) -> SessionState:
        return self._phase.state

    @property
    def status(self) -> str:
        return self._phase.status

    @property
    def closed(self) -> bool:
        return isinstance(self._phase, Closed)

    def _enter(self, phase: Phase):
        if type(phase) not in _NEXT[type(self._phase)]:
            raise RuntimeError(f"Invalid transition {self.state.value} -> {phase.state.value}")
        previous = self._phase
        self._phase = phase
        logger.debug("Session %s -> %s", previous.state.value, phase.state.value)
        if phase.status != previous.status:
            self.listener.on_status(phase.status)

    # Transport-facing entry points

    def connected(self):
        self._events.put_nowait(TransportConnected())

    def frame_received(self, data: Union[str, bytes]):
        self._events.put_nowait(FrameReceived(data))

    def disconnected(self, error: Optional[Exception] = None):
        self._events.put_nowait(TransportDisconnected(error))

    # Caller-facing operations

    async def start(self):
        """Open the transport. The session closes if that fails."""
        if not isinstance(self._phase, Connecting):
            raise SessionClosed("Session already started or closed")
        self.listener.on_status(self.status)
        try:
            await self.transport.open(self)
        except (OSError, TransportError) as e:
            error = e if isinstance(e, TransportError) else TransportError(str(e))
            await self._shutdown(error)

    async def run(self):
        """Process transport events until the session is closed."""
        while not self.closed:
            event = await self._events.get()
            if event is not None:
                await self.dispatch(event)

    async def dispatch(self, event: Event):
        """Apply one event to the current state."""
        if self.closed:
            return
        if isinstance(event, TransportConnected):
            await self._handle_connected()
        elif isinstance(event, FrameReceived):
            await self._handle_frame(event.data)
        elif isinstance(event, TransportDisconnected):
            await self._shutdown(event.error)
        else:
            raise TypeError(f"Unknown event: {event!r}")

    def encrypt(self, plaintext: bytes) -> EncryptedEnvelope:
        """
        Encrypt under the session key.

        Raises:
            SessionNotReady: Handshake has not completed
            SessionClosed: Session has been closed
        """
        return self._cipher().encrypt(plaintext)

    def decrypt(self, envelope: EncryptedEnvelope) -> bytes:
        """
        Decrypt under the session key.

        Raises:
            AuthenticationFailure: Tag did not verify
            SessionNotReady: Handshake has not completed
            SessionClosed: Session has been closed
        """
        return self._cipher().decrypt(envelope)

    async def send(self, text: str) -> bool:
        """
        Encrypt and send a chat message.

        Returns:
            True if the message was sent, False if the session is not ready
            yet or the text is empty

        Raises:
            SessionClosed: If the session has been closed
        """
        if self.closed:
            raise SessionClosed("Cannot send on a closed session")
        if not text or not isinstance(self._phase, Ready):
            return False

        envelope = self.encrypt(text.encode("utf-8"))
        try:
            await self.transport.send(encode_frame(DataFrame(envelope)))
        except TransportError as e:
            await self._shutdown(e)
            raise SessionClosed("Transport failed while sending") from e
        return True

    async def close(self):
        """Tear the session down and discard all key material."""
        await self._shutdown(None)

    # Internals

    def _cipher(self) -> CipherSession:
        phase = self._phase
        if isinstance(phase, Ready):
            return phase.cipher
        if isinstance(phase, Closed):
            raise SessionClosed("Session is closed")
        raise SessionNotReady("Handshake has not completed")

    async def _handle_connected(self):
        phase = self._phase
        if not isinstance(phase, Connecting):
            logger.debug("Ignoring connect event in state %s", self.state.value)
            return

        public_key = self.key_agreement.export_public(phase.keypair)
        try:
            await self.transport.send(encode_frame(KeyFrame(public_key)))
        except TransportError as e:
            await self._shutdown(e)
            return
        if self._phase is not phase:
            # closed while the key frame was in flight
            return
        self._enter(AwaitingPeerKey(keypair=phase.keypair))

    async def _handle_frame(self, data: Union[str, bytes]):
        try:
            frame = decode_frame(data)
        except FrameError as e:
            logger.warning("Dropping malformed frame: %s", e)
            self.listener.on_error(e)
            return

        if isinstance(frame, KeyFrame):
            await self._handle_key_frame(frame)
        else:
            self._handle_data_frame(frame)

    async def _handle_key_frame(self, frame: KeyFrame):
        phase = self._phase
        if isinstance(phase, Ready):
            logger.debug("Ignoring peer key, session already keyed")
            return
        if not isinstance(phase, AwaitingPeerKey):
            logger.debug("Ignoring peer key in state %s", self.state.value)
            return

        try:
            peer_key = self.key_agreement.import_peer_public(frame.key)
        except InvalidKeyEncoding as e:
            logger.warning("Rejected peer public key: %s", e)
            if self.close_on_invalid_key:
                await self._shutdown(e)
            else:
                self.listener.on_error(e)
            return

        try:
            shared_key = self.key_agreement.derive_shared(phase.keypair, peer_key)
        except CryptoError as e:
            logger.error("Key derivation failed: %s", e)
            await self._shutdown(e)
            return

        self._enter(Ready(keypair=phase.keypair, cipher=CipherSession(shared_key)))
        logger.info("Secure session established")
        self.listener.on_ready()

    def _handle_data_frame(self, frame: DataFrame):
        phase = self._phase
        if not isinstance(phase, Ready):
            logger.debug("Dropping message received before the session is ready")
            return

        try:
            plaintext = phase.cipher.decrypt(frame.envelope)
        except AuthenticationFailure as e:
            logger.warning("Dropping message that failed authentication")
            self.listener.on_error(e)
            return
        try:
            text = plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.warning("Dropping message that is not valid UTF-8")
            self.listener.on_error(AuthenticationFailure(f"Undecodable message: {e}"))
            return
        self.listener.on_plaintext(text)

    async def _shutdown(self, error: Optional[Exception]):
        phase = self._phase
        if isinstance(phase, Closed):
            return
        if isinstance(phase, Ready):
            phase.cipher.close()
        self._enter(Closed(error=error))
        # wake run()
        self._events.put_nowait(None)

        if error is not None:
            logger.info("Session closed: %s", error)
        else:
            logger.info("Session closed")

        try:
            await self.transport.close()
        except TransportError as e:
            logger.debug("Error closing transport: %s", e)
        self.listener.on_closed(error)
