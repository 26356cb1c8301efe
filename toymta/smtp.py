# Overview:
#
# This file implements the subset of the SMTP protocol (RFC 5321) that
# toymta speaks.  Both client and server are supported, and rely on the
# asyncio python library for asynchronous behavior.
#
# The server side is one protocol instance per connection.  It keeps
# the envelope for that connection, enforces the ordering of MAIL, RCPT
# and DATA, collects the message body and hands the finished envelope to
# a router, which decides whether the message is delivered locally or
# relayed.
#
# The client side is used by the relay code to talk to the mail
# exchanger of a remote domain.  Every command returns a future that is
# resolved when the reply arrives, or fails if the reply code isn't one
# of the codes the caller is prepared to accept.
#
# Limitations:
#
# - Only one RCPT per envelope; a second RCPT replaces the first.
# - No size limit on lines or on the message body.
# - No dot un-stuffing of the message body: lines are kept as sent.

import asyncio
import collections
import enum
import syslog

__all__ = ["ReadError", "InvalidState", "TemporaryFailure",
           "PermanentFailure", "InvalidResponseCode", "Command",
           "parse_command", "parse_path", "envelope", "collector",
           "server", "client"]

class _MessageException(Exception):
    message = None
    name = "MessageException"

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.name + ": " + self.message

    def __repr__(self):
        return "<smtp." + self.name + ": \"" + self.message + "\">"

class ReadError(_MessageException):
    name = "ReadError"

class InvalidState(_MessageException):
    name = "InvalidState"

class _CodeFailure(Exception):
    message = " "
    name = "CodeFailure"
    code = None
    data = None

    def __init__(self, message=" ", code="", data=None):
        super().__init__(message)
        self.message = message
        self.code = code
        if data is None:
            data = []
        elif isinstance(data, str):
            data = [data]
        self.data = data

    def __str__(self):
        if len(self.data) == 1:
            data = self.data[0]
        else:
            data = repr(self.data)
        return self.name + ": " + self.message + " (" + self.code + " " + data + ")"

    def __repr__(self):
        return ("<smtp." + self.name + ": " + self.code + " \"" +
                self.message + "\" " + repr(self.data) + ">")

    # Make up a response using the code we were sent.
    def response(self):
        if not self.data:
            return [self.code + " " + self.message.strip()]
        responses = []
        for line in self.data:
            responses.append(self.code + "-" + line)
        last = responses[-1]
        last = last[:3] + " " + last[4:]
        responses[-1] = last
        return responses

class TemporaryFailure(_CodeFailure):
    name = "TemporaryFailure"

class PermanentFailure(_CodeFailure):
    name = "PermanentFailure"

class InvalidResponseCode(_CodeFailure):
    name = "InvalidResponseCode"
    def response(self):
        return ["451 " + self.message]

class Devnull:
    def write(self, msg): pass
    def flush(self): pass


NEWLINE = '\n'
EMPTYSTRING = ''
CRLF = '\r\n'

# The finished envelope, as handed from a session to the router.
envelope = collections.namedtuple("envelope",
                                  ["reverse_path", "forward_path", "body"])

class Command(enum.Enum):
    HELO = "HELO"
    MAIL = "MAIL"
    RCPT = "RCPT"
    DATA = "DATA"
    RSET = "RSET"
    NOOP = "NOOP"
    QUIT = "QUIT"
    UNKNOWN = None

# Keywords are matched exactly: "helo" is not a command.
_keywords = {
    "HELO": Command.HELO,
    "EHLO": Command.HELO,
    "MAIL": Command.MAIL,
    "RCPT": Command.RCPT,
    "DATA": Command.DATA,
    "RSET": Command.RSET,
    "NOOP": Command.NOOP,
    "QUIT": Command.QUIT,
}

def parse_command(line):
    """Split a command line into its Command and the argument tail.

    The line is trimmed first.  The keyword is everything up to the first
    space; the argument is the rest of the line with surrounding whitespace
    removed, or None if there is nothing after the keyword.
    """
    line = line.strip()
    i = line.find(' ')
    if i < 0:
        keyword = line
        arg = None
    else:
        keyword = line[:i]
        arg = line[i+1:].strip() or None
    return _keywords.get(keyword, Command.UNKNOWN), arg

def parse_path(keyword, arg):
    """Pull the address out of a MAIL FROM:<...> or RCPT TO:<...> argument.

    Returns the address, or None if the keyword is missing, the address
    isn't bracketed, or it doesn't have exactly one @ with something on
    either side of it.
    """
    if not arg:
        return None
    i = arg.find(keyword)
    if i < 0:
        return None
    rest = arg[i + len(keyword):]
    start = rest.find('<')
    end = rest.find('>', start + 1)
    if start < 0 or end < 0:
        return None
    address = rest[start+1:end].strip()
    parts = address.split('@')
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None
    return address

class collector:
    """Accumulates the lines of a message body until the lone dot."""

    def __init__(self):
        self.lines = []
        self.done = False

    # Returns True once the terminator has been seen.
    def feed(self, line):
        if self.done:
            raise InvalidState("message body already terminated")
        if line.strip() == ".":
            self.done = True
            return True
        self.lines.append(line)
        return False

    def body(self):
        return EMPTYSTRING.join(line + NEWLINE for line in self.lines)

class _crlfprotocol(asyncio.Protocol):
    transport = None
    peer = None
    received_bytes = b""
    held = False

    def __init__(self):
        self.received_bytes = b""

    # Implementation of base class abstract method
    # We do line separation here.   Anything higher level
    # than a line is handled by the process_line method
    # in the subclass.
    #
    # Bytes are buffered until a complete line is available, so a
    # command that arrives in several pieces is put back together,
    # and several commands arriving in one piece are handled one at a
    # time.

    def data_received(self, data):
        self.received_bytes = self.received_bytes + data
        self.process_buffer()

    def process_buffer(self):
        # If the subclass is busy with the last line, leave the rest in
        # the buffer; it will call us again when it is ready.
        while not self.held and not self.closing():
            nlp = self.received_bytes.find(b"\n")

            # No line terminator reached yet.
            if nlp == -1:
                return
            raw = self.received_bytes[:nlp]
            if raw.endswith(b"\r"):
                raw = raw[:-1]

            # retain the rest of the input data.
            self.received_bytes = self.received_bytes[nlp+1:]

            try:
                line = str(raw, encoding="utf-8", errors="strict")
            except UnicodeDecodeError:
                self.read_error("invalid character encoding")
                return
            self.process_line(line)

    def closing(self):
        return self.transport is not None and self.transport.is_closing()

    def hold(self):
        self.held = True
        if self.transport is not None:
            self.transport.pause_reading()

    def release(self):
        self.held = False
        if self.transport is not None and not self.transport.is_closing():
            self.transport.resume_reading()
        self.process_buffer()

    def process_line(self, line):
        raise NotImplementedError

    def read_error(self, explanation):
        raise NotImplementedError

class server(_crlfprotocol):
    COMMAND = 0
    DATA = 1
    DELIVERING = 2
    debugstream = Devnull()

    def __init__(self, config, router):
        super().__init__()
        self.config = config
        self.router = router
        self.hostname = config.hostname
        self.smtp_state = self.COMMAND
        self.collector = None
        self.delivery_task = None
        self.reset_envelope()
        self.handlers = {
            Command.HELO: self.smtp_HELO,
            Command.MAIL: self.smtp_MAIL,
            Command.RCPT: self.smtp_RCPT,
            Command.DATA: self.smtp_DATA,
            Command.RSET: self.smtp_RSET,
            Command.NOOP: self.smtp_NOOP,
            Command.QUIT: self.smtp_QUIT,
            Command.UNKNOWN: self.smtp_UNKNOWN,
        }

    def reset_envelope(self):
        self.reverse_path = None
        self.forward_path = None
        self.seen_mail = False
        self.seen_rcpt = False

    def read_error(self, explanation):
        self.push("500 " + explanation)
        self.transport.close()

    def connection_made(self, transport):
        self.transport = transport
        self.peer = transport.get_extra_info("peername")
        print('Peer:', repr(self.peer), file=self.debugstream)
        syslog.syslog(syslog.LOG_INFO, "connection from %s" % (self.peer,))
        self.opened()
        self.push("220 %s service ready" % self.hostname)

    # Overrides base class for convenience
    def push(self, msg):
        print("Resp: ", str(msg), file=self.debugstream)
        if self.transport is None or self.transport.is_closing():
            return
        self.transport.write(bytes(msg + CRLF, 'utf-8'))

    # Implementation of base class abstract method
    def process_line(self, line):
        print('Data:', repr(line), file=self.debugstream)
        if self.smtp_state == self.COMMAND:
            command, arg = parse_command(line)
            self.handlers[command](arg)
            return
        elif self.smtp_state == self.DATA:
            if self.collector.feed(line):
                self.process_data()
            return
        else:
            # process_buffer doesn't hand us lines while we deliver.
            raise InvalidState("line received while delivering")

    def process_data(self):
        message = envelope(self.reverse_path, self.forward_path,
                           self.collector.body())
        self.collector = None

        # The envelope is used up whether or not delivery works out, so
        # that a bare DATA can't deliver it a second time.
        self.reset_envelope()
        self.smtp_state = self.DELIVERING
        self.hold()
        self.delivery_task = asyncio.ensure_future(self.deliver(message))

    async def deliver(self, message):
        try:
            status = await self.router.deliver(message)
        except Exception as x:
            syslog.syslog(syslog.LOG_ERR, "delivery to %s failed: %s" %
                          (message.forward_path, x))
            status = "451 Local error in processing"
        self.smtp_state = self.COMMAND
        if not status:
            self.push('250 OK')
        else:
            self.push(status)
        self.release()

    # SMTP commands
    def smtp_HELO(self, arg):
        if not arg:
            self.push('501 missing argument(s)')
            return
        self.push('250 hello ' + arg)

    def smtp_MAIL(self, arg):
        # A new MAIL always abandons whatever envelope was in progress.
        self.reset_envelope()
        address = parse_path("FROM:", arg)
        if address is None:
            self.push('501 reverse path not well-formed')
            return
        self.reverse_path = address
        self.seen_mail = True
        print('sender:', self.reverse_path, file=self.debugstream)
        self.push('250 reverse path ok')

    def smtp_RCPT(self, arg):
        if not self.seen_mail:
            self.push('503 sender info not yet given')
            return
        address = parse_path("TO:", arg)
        if address is None:
            self.push('501 forward path not well-formed')
            return
        self.forward_path = address
        self.seen_rcpt = True
        print('recip:', self.forward_path, file=self.debugstream)
        if self.router.is_local(address):
            self.push('250 forward path ok')
        else:
            self.push('251 recipient not local, will attempt to forward')

    def smtp_DATA(self, arg):
        if not self.seen_rcpt:
            self.push('503 valid RCPT must precede DATA')
            return
        self.smtp_state = self.DATA
        self.collector = collector()
        self.push('354 Start mail input; end with <CRLF>.<CRLF>')

    def smtp_RSET(self, arg):
        self.reset_envelope()
        self.push('250 reset ok')

    def smtp_NOOP(self, arg):
        self.push('250 OK')

    def smtp_QUIT(self, arg):
        # args is ignored
        self.push('221 %s closing connection' % self.hostname)
        self.transport.close()

    def smtp_UNKNOWN(self, arg):
        self.push('500 unrecognized command')

    # Subclass or acceptor may want to know when a session starts and
    # when it has been dropped or lost.
    def opened(self):
        pass

    def closed(self):
        pass

    def connection_lost(self, exception):
        if exception is not None:
            syslog.syslog(syslog.LOG_INFO, "connection from %s lost: %s" %
                          (self.peer, exception))
        print('Closed:', repr(self.peer), file=self.debugstream)
        self.closed()

class client(_crlfprotocol):
    WAITING = 0   # waiting for a response from the server
    READY = 1     # ready to send a command to the server
    CLOSED = 2
    debugstream = Devnull()

    def __init__(self):
        super().__init__()
        self.state = self.WAITING
        self.statfuture = None
        self.expected = ()
        self.repeat_code = None
        self.received_lines = []

    def read_error(self, explanation):
        self.finished(ReadError(explanation))

    # We don't send anything when the connection starts--we just
    # wait for the other end to say something.  The greeting may come
    # in before the controller gets around to waiting for it, so the
    # future is made here.
    def connection_made(self, transport):
        self.transport = transport
        self.peer = transport.get_extra_info("peername")
        self.state = self.WAITING
        self.expected = ("220",)
        self.statfuture = asyncio.get_event_loop().create_future()
        self.greeting = self.statfuture

    # The controller needs to wait for the greeting to happen.
    def is_ready(self):
        return self.greeting

    # Overrides base class for convenience
    def push(self, msg):
        print("Command: ", str(msg), file=self.debugstream)
        self.transport.write(bytes(msg + CRLF, 'utf-8'))

    # Implementation of base class abstract method
    def process_line(self, line):
        print('Response:', repr(line), file=self.debugstream)
        if self.state == self.WAITING:
            self.parse_response_line(line)
            return
        # Shouldn't be getting input in this state because
        # we haven't said anything.
        self.finished(InvalidState(line))

    def parse_response_line(self, line):
        if len(line) < 3 or not line[0:3].isdigit():
            self.finished(InvalidResponseCode(message="Short response line",
                                              data=line))
            return
        code = line[0:3]
        more = line[3:4]
        text = line[4:]
        if self.repeat_code is not None:
            if self.repeat_code != code:
                self.finished(InvalidResponseCode(message="Conflicting response codes",
                                                  code=code,
                                                  data=self.received_lines))
                return
        else:
            self.repeat_code = code
        self.received_lines.append(text)
        if more != "-":
            response_lines = self.received_lines
            self.repeat_code = None
            self.received_lines = []
            self.state = self.READY
            self.response(code, response_lines)

    # Check a complete reply against the codes the current command
    # is allowed to get back.
    def response(self, code, lines):
        fut = self.statfuture
        self.statfuture = None
        if fut is None or fut.done():
            return
        if code in self.expected:
            fut.set_result((code, lines))
        elif code[0] == '5':
            fut.set_exception(PermanentFailure(code=code, data=lines))
        elif code[0] == '4':
            fut.set_exception(TemporaryFailure(code=code, data=lines))
        else:
            fut.set_exception(InvalidResponseCode(message="Unexpected response",
                                                  code=code, data=lines))

    # The conversation can't go on.  The controller still owns the
    # connection and closes it with shutdown().
    def finished(self, exception):
        syslog.syslog(syslog.LOG_INFO, str(exception))
        self.state = self.CLOSED
        if self.statfuture is not None and not self.statfuture.done():
            self.statfuture.set_exception(exception)
        self.statfuture = None

    def send_command(self, command, *codes):
        if self.state != self.READY:
            raise InvalidState("Not ready to send a new command: " +
                               str(self.state))
        self.state = self.WAITING
        self.expected = codes
        self.statfuture = asyncio.get_event_loop().create_future()
        self.push(command)
        return self.statfuture

    def hello(self, name):
        return self.send_command("HELO " + name, "250")

    def mail_from(self, address):
        return self.send_command("MAIL FROM:<" + address + ">", "250")

    def rcpt_to(self, address):
        return self.send_command("RCPT TO:<" + address + ">", "250", "251")

    def data(self):
        return self.send_command("DATA", "354")

    # Send the message body, followed by the terminating dot, and wait
    # for the server to accept it.  The body goes out as it was
    # received, so any dot-stuffing done by the submitting client is kept.
    def send_data(self, body):
        if self.state != self.READY:
            raise InvalidState("Not ready to send data: " + str(self.state))
        lines = body.split(NEWLINE)
        if lines and lines[-1] == "":
            lines.pop()
        payload = EMPTYSTRING.join(line.rstrip("\r") + CRLF for line in lines)
        print("Data: ", repr(payload), file=self.debugstream)
        self.transport.write(bytes(payload, 'utf-8'))
        return self.send_command(".", "250")

    # QUIT is sent on every path out of a conversation, including
    # the ones where the last command failed; we don't wait for the
    # reply.
    def shutdown(self):
        print("shutdown:", self.peer, file=self.debugstream)
        if self.transport is None or self.transport.is_closing():
            return
        self.push("QUIT")
        self.state = self.CLOSED
        self.transport.close()

    def connection_lost(self, exception):
        self.state = self.CLOSED
        if self.statfuture is not None and not self.statfuture.done():
            self.statfuture.set_exception(ReadError("connection lost"))
        self.statfuture = None
