import asyncio
import syslog

from toymta import mx
from toymta import smtp

# The exchanger class is a controller for the smtp client class that
# takes care of finding the mail exchanger for a particular domain,
# connecting to the exchanger with the best preference, and then
# walking through the conversation needed to hand one message to it.
#
# There is no spool: if the exchanger can't be found or reached, or
# says anything other than what we expect at any step, the message is
# not delivered and the caller is told so.

class exchanger:
  debugstream = smtp.Devnull()

  def __init__(self, config, domain, resolver=None):
    self.config = config
    self.domain = domain
    self.resolver = resolver
    self.port = config.relay_port
    self.timeout = config.relay_timeout

  async def get_connection(self):
    name = await mx.get_exchanger(self.domain, self.resolver,
                                  self.config.implicit_mx)
    if name is None:
      syslog.syslog(syslog.LOG_INFO, "no exchanger for domain %s" % self.domain)
      return None

    print("Connecting to", name, "port", self.port, file=self.debugstream)
    loop = asyncio.get_event_loop()
    try:
      (transport, connection) = await self.wait(
        loop.create_connection(smtp.client, host=name, port=self.port))
    except (OSError, asyncio.TimeoutError) as x:
      syslog.syslog(syslog.LOG_INFO,
                    "connect to %s for %s failed: %s" % (name, self.domain, x))
      return None
    connection.debugstream = self.debugstream
    print("Connected to:", repr(connection.peer), file=self.debugstream)
    return connection

  # Wait for a step of the conversation, giving up after relay-timeout
  # seconds if one is configured.
  def wait(self, co):
    return asyncio.wait_for(co, self.timeout)

  # Hand the message over.   Returns True if the exchanger took it.
  async def deliver(self, envelope):
    connection = await self.get_connection()
    if connection is None:
      return False
    try:
      await self.wait(connection.is_ready())
      await self.wait(connection.hello(self.config.hostname))
      await self.wait(connection.mail_from(envelope.reverse_path))
      await self.wait(connection.rcpt_to(envelope.forward_path))
      await self.wait(connection.data())
      await self.wait(connection.send_data(envelope.body))
    except (smtp.TemporaryFailure, smtp.PermanentFailure,
            smtp.InvalidResponseCode) as x:
      syslog.syslog(syslog.LOG_INFO, "relay of %s to %s refused: %s" %
                    (envelope.forward_path, repr(connection.peer),
                     " ".join(x.response())))
      return False
    except (smtp.ReadError, smtp.InvalidState, OSError,
            asyncio.TimeoutError) as x:
      syslog.syslog(syslog.LOG_INFO, "relay of %s to %s failed: %s" %
                    (envelope.forward_path, repr(connection.peer), repr(x)))
      return False
    finally:
      connection.shutdown()

    syslog.syslog(syslog.LOG_INFO, "relayed %s to %s" %
                  (envelope.forward_path, repr(connection.peer)))
    return True

async def relay(config, envelope, resolver=None):
  domain = envelope.forward_path.split("@")[1]
  return await exchanger(config, domain, resolver).deliver(envelope)
