import pytest

from toymta import smtp
from toymta.smtp import Command


@pytest.mark.parametrize("line,command,arg", [
    ("HELO client.example", Command.HELO, "client.example"),
    ("EHLO client.example", Command.HELO, "client.example"),
    ("MAIL FROM:<a@b.com>", Command.MAIL, "FROM:<a@b.com>"),
    ("RCPT TO:<c@localhost>", Command.RCPT, "TO:<c@localhost>"),
    ("DATA", Command.DATA, None),
    ("RSET", Command.RSET, None),
    ("NOOP", Command.NOOP, None),
    ("QUIT", Command.QUIT, None),
    ("  QUIT  \r\n", Command.QUIT, None),
    ("HELO   ", Command.HELO, None),
    ("VRFY someone", Command.UNKNOWN, "someone"),
    ("helo client.example", Command.UNKNOWN, "client.example"),
    ("HELOX", Command.UNKNOWN, None),
    ("", Command.UNKNOWN, None),
])
def test_parse_command(line, command, arg):
    assert smtp.parse_command(line) == (command, arg)


@pytest.mark.parametrize("arg,address", [
    ("FROM:<a@b.com>", "a@b.com"),
    ("FROM: <a@b.com>", "a@b.com"),
    ("FROM:<bad>", None),
    ("FROM:a@b.com", None),
    ("FROM:<a@b.com", None),
    ("<a@b.com>", None),
    ("FROM:<a@b@c.com>", None),
    ("FROM:<@b.com>", None),
    ("FROM:<a@>", None),
    ("from:<a@b.com>", None),
    (None, None),
])
def test_parse_path(arg, address):
    assert smtp.parse_path("FROM:", arg) == address


def test_collector_stops_at_lone_dot():
    c = smtp.collector()
    assert not c.feed("Subject: hi")
    assert not c.feed("")
    assert not c.feed("body")
    assert c.feed(".")
    assert c.body() == "Subject: hi\n\nbody\n"


def test_collector_keeps_dot_stuffed_lines():
    c = smtp.collector()
    for line in ["..", ".hidden", "a . b"]:
        assert not c.feed(line)
    assert c.feed(" . ")
    assert c.body() == "..\n.hidden\na . b\n"


def test_collector_is_not_restartable():
    c = smtp.collector()
    c.feed(".")
    with pytest.raises(smtp.InvalidState):
        c.feed("more")


def test_code_failure_response():
    x = smtp.PermanentFailure(code="550", data=["no such user", "go away"])
    assert x.response() == ["550-no such user", "550 go away"]
    assert "550" in str(x)


def test_invalid_response_code_response():
    x = smtp.InvalidResponseCode(message="Unexpected response", code="299",
                                 data="huh")
    assert x.response() == ["451 Unexpected response"]
