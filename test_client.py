"""
Tests for the chat client's reconnect loop and message handling.
"""

import asyncio
import json
import pytest

from chat_client.cli_client import ChatClient
from e2e_crypto.cipher import encrypt
from e2e_crypto.errors import KeyGenerationFailure, TransportError
from e2e_crypto.frames import DataFrame, KeyFrame, decode_frame, encode_frame
from e2e_crypto.handshake import SessionState, Transport
from e2e_crypto.key_agreement import KeyAgreement


class DroppingTransport(Transport):
    """Connects, sends the key frame, then the relay drops the connection"""

    opened = []

    def __init__(self, url):
        self.url = url
        self.sent = []

    async def open(self, session):
        DroppingTransport.opened.append(self)
        session.connected()
        session.disconnected(TransportError("relay restarted"))

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        pass


def test_reconnect_uses_fresh_session_each_time():
    async def scenario():
        DroppingTransport.opened = []
        lines = []
        client = ChatClient(
            relay_url="ws://relay.test/ws",
            reconnect_delay=0,
            transport_factory=DroppingTransport,
            output=lines.append
        )

        async def stop_after_three():
            while len(DroppingTransport.opened) < 3:
                await asyncio.sleep(0)
            await client.stop()

        await asyncio.wait_for(
            asyncio.gather(client.maintain_connection(), stop_after_three()),
            timeout=5
        )

        transports = DroppingTransport.opened
        assert len(transports) >= 3
        assert all(t.url == "ws://relay.test/ws" for t in transports)
        public_keys = {t.sent[0] for t in transports[:3]}
        assert len(public_keys) == 3, "Each connection must use a new keypair"
        assert "[offline]" in lines

    asyncio.run(scenario())


def test_key_generation_failure_stops_reconnecting():
    class BrokenAgreement(KeyAgreement):
        def generate(self):
            raise KeyGenerationFailure("no entropy")

    async def scenario():
        client = ChatClient(reconnect_delay=0, key_agreement=BrokenAgreement(),
                            transport_factory=DroppingTransport, output=lambda line: None)
        with pytest.raises(KeyGenerationFailure):
            await client.maintain_connection()
        assert client.running is False

    asyncio.run(scenario())


class ScriptedTransport(Transport):
    """Stays connected; the test plays the peer"""

    instances = []

    def __init__(self, url):
        self.sent = []
        self.session = None
        ScriptedTransport.instances.append(self)

    async def open(self, session):
        self.session = session
        session.connected()

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        pass


def test_chat_round_trip_through_client():
    async def scenario():
        ScriptedTransport.instances = []
        lines = []
        client = ChatClient(peer_name="Harsh", reconnect_delay=0,
                            transport_factory=ScriptedTransport, output=lines.append)
        connection = asyncio.create_task(client.maintain_connection())

        while not ScriptedTransport.instances or not ScriptedTransport.instances[0].sent:
            await asyncio.sleep(0)
        transport = ScriptedTransport.instances[0]

        assert await client.send_message("too soon") is False

        agreement = KeyAgreement()
        peer = agreement.generate()
        client_key = agreement.import_peer_public(decode_frame(transport.sent[0]).key)
        shared = agreement.derive_shared(peer, client_key)
        transport.session.frame_received(encode_frame(KeyFrame(agreement.export_public(peer))))

        while client.session.state is not SessionState.READY:
            await asyncio.sleep(0)

        transport.session.frame_received(encode_frame(DataFrame(encrypt(shared, "hi".encode()))))
        while "Harsh: hi" not in lines:
            await asyncio.sleep(0)

        assert await client.send_message("hello back")
        assert "You: hello back" in lines
        sent = json.loads(transport.sent[-1])
        assert sent["type"] == "message"

        await client.stop()
        await asyncio.wait_for(connection, timeout=5)
        assert client.session.state is SessionState.CLOSED
        assert await client.send_message("after stop") is False

    asyncio.run(scenario())
