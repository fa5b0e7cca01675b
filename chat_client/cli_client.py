#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- Connecting to a relay and exchanging ephemeral keys with one peer
- Sending and receiving AES-GCM encrypted messages
- Reconnecting with a fresh session after the connection drops
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Callable, Optional
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from e2e_crypto.errors import KeyGenerationFailure, SecureChatError, SessionClosed
from e2e_crypto.handshake import SessionHandshake, SessionListener, Transport
from e2e_crypto.key_agreement import KeyAgreement, DERIVE_HKDF, DERIVE_RAW
from chat_client.transport import WebSocketTransport


DEFAULT_RELAY_URL = "ws://localhost:8000/ws"
RECONNECT_DELAY = 2.0  # seconds

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /status - Show connection status
  /help - Show this help
  /quit - Quit application"""


class ChatClient(SessionListener):
    """
    End-to-end encrypted chat client.

    Keeps one session at a time and starts a brand-new one, with a new
    keypair, every time the connection is re-established.
    """

    def __init__(
        self,
        relay_url: str = DEFAULT_RELAY_URL,
        peer_name: str = "Peer",
        reconnect_delay: float = RECONNECT_DELAY,
        key_agreement: Optional[KeyAgreement] = None,
        transport_factory: Callable[[str], Transport] = WebSocketTransport,
        output: Callable[[str], None] = print
    ):
        """
        Initialize chat client.

        Args:
            relay_url: WebSocket URL of the relay
            peer_name: Label shown in front of incoming messages
            reconnect_delay: Seconds to wait before reconnecting
            key_agreement: Key derivation settings shared with the peer
            transport_factory: Builds a transport for a relay URL
            output: Where user-facing lines are written
        """
        self.relay_url = relay_url
        self.peer_name = peer_name
        self.reconnect_delay = reconnect_delay
        self.key_agreement = key_agreement or KeyAgreement()
        self.transport_factory = transport_factory
        self.output = output
        self.session: Optional[SessionHandshake] = None
        self.sessions_started = 0
        self.status = "offline"
        self.running = False

    # Session callbacks

    def on_status(self, status: str):
        if status != self.status:
            self.status = status
            self.output(f"[{status}]")

    def on_ready(self):
        self.output("[Secure session established]")

    def on_plaintext(self, text: str):
        self.output(f"{self.peer_name}: {text}")

    def on_error(self, error: SecureChatError):
        logger.debug("Session error: %s", error)

    def on_closed(self, error: Optional[Exception]):
        if error is not None:
            logger.info("Disconnected: %s", error)

    # Connection management

    async def run_session(self):
        """Run one session from connect to close"""
        transport = self.transport_factory(self.relay_url)
        session = SessionHandshake(transport, listener=self, key_agreement=self.key_agreement)
        self.session = session
        self.sessions_started += 1
        await session.start()
        await session.run()

    async def maintain_connection(self):
        """
        Keep a session running until stop() is called.

        Raises:
            KeyGenerationFailure: If a keypair cannot be generated
        """
        self.running = True
        while self.running:
            try:
                await self.run_session()
            except KeyGenerationFailure:
                logger.error("Cannot generate session keys, giving up")
                self.running = False
                raise
            if not self.running:
                break
            logger.debug("Reconnecting in %.1f seconds", self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    async def stop(self):
        """Stop reconnecting and close the current session"""
        self.running = False
        if self.session is not None:
            await self.session.close()

    async def send_message(self, text: str) -> bool:
        """
        Send an encrypted message to the peer.

        Args:
            text: Message to send

        Returns:
            True if the message was sent
        """
        session = self.session
        if session is None:
            return False
        try:
            sent = await session.send(text)
        except SessionClosed:
            sent = False
        if sent:
            self.output(f"You: {text}")
        return sent

    async def run_interactive(self):
        """Run interactive chat session"""
        connection_task = asyncio.create_task(self.maintain_connection())
        prompt = PromptSession()

        def end_prompt(task):
            if prompt.app.is_running:
                prompt.app.exit(exception=EOFError())

        connection_task.add_done_callback(end_prompt)

        print(HELP_TEXT)
        print()

        try:
            while not connection_task.done():
                try:
                    with patch_stdout():
                        user_input = await prompt.prompt_async("> ")
                except (KeyboardInterrupt, EOFError):
                    break

                user_input = user_input.strip()
                if not user_input:
                    continue

                if user_input.startswith("/"):
                    if not self._handle_command(user_input):
                        break
                elif not await self.send_message(user_input):
                    print("Not connected to a peer yet, message not sent.")

        finally:
            await self.stop()
            result, = await asyncio.gather(connection_task, return_exceptions=True)

        if isinstance(result, KeyGenerationFailure):
            raise result

    def _handle_command(self, command: str) -> bool:
        """Handle slash commands. Returns False to quit."""
        cmd = command.split(maxsplit=1)[0].lower()

        if cmd == "/quit":
            return False
        elif cmd == "/status":
            state = self.session.state.value if self.session else "none"
            print(f"Status: {self.status} (session {state})")
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")
        return True


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="End-to-end encrypted chat client")
    parser.add_argument("--relay", default=os.environ.get("SECURE_CHAT_RELAY", DEFAULT_RELAY_URL),
                        help="relay WebSocket URL")
    parser.add_argument("--peer-name", default="Peer", help="label for incoming messages")
    parser.add_argument("--reconnect-delay", type=float, default=RECONNECT_DELAY,
                        help="seconds to wait before reconnecting")
    parser.add_argument("--webcrypto-compat", action="store_true",
                        help="use the raw ECDH secret as the AES key, like browser peers")
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    return parser.parse_args(argv)


def cli(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    logging.getLogger("websockets").setLevel(logging.WARNING)

    client = ChatClient(
        relay_url=args.relay,
        peer_name=args.peer_name,
        reconnect_delay=args.reconnect_delay,
        key_agreement=KeyAgreement(DERIVE_RAW if args.webcrypto_compat else DERIVE_HKDF)
    )

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    try:
        asyncio.run(client.run_interactive())
    except KeyboardInterrupt:
        print("\nInterrupted")
    except KeyGenerationFailure as e:
        print(f"Fatal: {e}")
        sys.exit(1)

    print("\nGoodbye!")


if __name__ == "__main__":
    cli()
