import asyncio
import types

import dns.name
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.ANY.MX
import pytest

from toymta import smtp
from toymta import smtpd


class FakeTransport:
    def __init__(self):
        self.written = []
        self.closed = False
        self.paused = False

    def write(self, data):
        self.written.append(data)

    def close(self):
        self.closed = True

    def is_closing(self):
        return self.closed

    def get_extra_info(self, name, default=None):
        if name == "peername":
            return ("127.0.0.1", 40000)
        return default

    def pause_reading(self):
        self.paused = True

    def resume_reading(self):
        self.paused = False

    def replies(self):
        text = b"".join(self.written).decode("utf-8")
        return text.split("\r\n")[:-1]


class FakeResolver:
    """Answers MX queries from a list of (preference, exchange) pairs."""

    def __init__(self, mxs=(), error=None, addresses=()):
        self.mxs = list(mxs)
        self.error = error
        self.addresses = addresses
        self.queries = []

    async def resolve(self, name, rdtype, raise_on_no_answer=True):
        self.queries.append((name, rdtype))
        if rdtype == "MX":
            if self.error is not None:
                raise self.error
            return [dns.rdtypes.ANY.MX.MX(dns.rdataclass.IN, dns.rdatatype.MX,
                                          preference,
                                          dns.name.from_text(exchange))
                    for preference, exchange in self.mxs]
        if rdtype == "A" and self.addresses:
            return types.SimpleNamespace(rrset=list(self.addresses))
        return types.SimpleNamespace(rrset=None)


class FakeExchanger:
    """A scripted remote mail server.

    Replies with the configured line for each command keyword, records
    what it was sent, and finishes when the client hangs up.
    """

    def __init__(self, greeting="220 mx.remote.example ready", **replies):
        self.greeting = greeting
        self.replies = {
            "HELO": "250 mx.remote.example",
            "MAIL": "250 sender ok",
            "RCPT": "250 recipient ok",
            "DATA": "354 go ahead",
            ".": "250 queued",
        }
        self.replies.update(replies)
        self.commands = []
        self.body = []

    async def start(self):
        self.done = asyncio.get_event_loop().create_future()
        self.server = await asyncio.start_server(self.handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def handle(self, reader, writer):
        writer.write((self.greeting + "\r\n").encode())
        in_data = False
        while True:
            try:
                line = await reader.readline()
            except ConnectionResetError:
                break
            if not line:
                break
            line = line.decode().rstrip("\r\n")
            if in_data:
                if line != ".":
                    self.body.append(line)
                    continue
                in_data = False
                self.commands.append(".")
                writer.write((self.replies["."] + "\r\n").encode())
                continue
            self.commands.append(line)
            keyword = line.split(" ")[0]
            if keyword == "QUIT":
                writer.write(b"221 bye\r\n")
                break
            reply = self.replies.get(keyword, "500 what?")
            if keyword == "DATA" and reply.startswith("354"):
                in_data = True
            writer.write((reply + "\r\n").encode())
        writer.close()
        if not self.done.done():
            self.done.set_result(True)

    async def finished(self):
        await asyncio.wait_for(self.done, 5)
        self.server.close()
        await self.server.wait_closed()


@pytest.fixture
def config(tmp_path):
    conf = smtpd.mtaconf()
    conf.hostname = "mta.test"
    conf.mailboxes = str(tmp_path)
    conf.relay_timeout = 5
    return conf


@pytest.fixture
def transport():
    return FakeTransport()


def start_session(config, router, transport):
    proto = smtp.server(config, router)
    proto.connection_made(transport)
    return proto


def send(proto, *lines):
    proto.data_received("".join(line + "\r\n" for line in lines).encode())
