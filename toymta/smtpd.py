import asyncio
import getopt
import socket
import sys
import syslog

from toymta import delivery
from toymta import sender
from toymta import smtp

class ConfigError(Exception):
  pass

class coldb:
  def parsefile(self, filename):
    with open(filename, "r") as cf:
      for line in cf:
        line = line.rstrip()
        if line == "" or line.lstrip().startswith("#"):
          continue
        fields = line.split(":")
        self.process_fields(fields)

class mtaconf(coldb):
  hostname = None
  address = "0.0.0.0"
  port = 2525
  mailboxes = "."
  relay_port = 25
  relay_timeout = None
  implicit_mx = False
  debug = None

  def __init__(self, conffile=None):
    # localhost is always local; local-domain lines add to it.
    self.local_domains = {"localhost"}
    if conffile is not None:
      self.parsefile(conffile)

  def process_fields(self, fields):
    key = fields[0].strip()
    count = 2
    if len(fields) < 2:
      raise ConfigError("Missing value: " + ":".join(fields))
    value = fields[1].strip()
    if key == "hostname":
      self.hostname = value
    elif key == "address":
      # IPv6 addresses have colons of their own.
      self.address = ":".join(fields[1:]).strip()
      count = len(fields)
    elif key == "port":
      self.port = self.number(key, value)
    elif key == "mailboxes":
      self.mailboxes = value
    elif key == "local-domain":
      self.local_domains.add(value.lower())
    elif key == "relay-port":
      self.relay_port = self.number(key, value)
    elif key == "relay-timeout":
      self.relay_timeout = self.number(key, value)
    elif key == "implicit-mx":
      if value not in ("yes", "no"):
        raise ConfigError("implicit-mx must be yes or no: " + value)
      self.implicit_mx = value == "yes"
    elif key == "debug":
      self.debug = value
    else:
      raise ConfigError("Unknown setting: " + ":".join(fields))
    if len(fields) > count:
      raise ConfigError("Too many fields: " + ":".join(fields))

  def number(self, key, value):
    try:
      return int(value)
    except ValueError:
      raise ConfigError("%s must be a number: %s" % (key, value)) from None

# The listener hands each connection to a new session and keeps track
# of the sessions that are still open.   Nothing enforces anything
# with that set; it is there so we can see what's going on.
class listener:
  def __init__(self, config, router=None):
    self.config = config
    if router is None:
      router = delivery.router(config)
    self.router = router
    self.sessions = set()

  def __call__(self):
    return session(self)

  async def start(self, loop=None):
    if loop is None:
      loop = asyncio.get_event_loop()
    return await loop.create_server(self, self.config.address,
                                    self.config.port, reuse_address=True)

class session(smtp.server):
  def __init__(self, listener):
    super().__init__(listener.config, listener.router)
    self.listener = listener

  def opened(self):
    self.listener.sessions.add(self)

  def closed(self):
    self.listener.sessions.discard(self)

def usage():
  print("usage: toymta [-c config] [-a address] [-p port] [-d]", file=sys.stderr)

def main(argv=None):
  if argv is None:
    argv = sys.argv[1:]
  try:
    opts, args = getopt.getopt(argv, "c:a:p:d")
  except getopt.GetoptError as x:
    print(x, file=sys.stderr)
    usage()
    return 2
  if args:
    usage()
    return 2

  conffile = None
  overrides = {}
  debug = False
  for opt, value in opts:
    if opt == "-c":
      conffile = value
    elif opt == "-a":
      overrides["address"] = value
    elif opt == "-p":
      overrides["port"] = value
    elif opt == "-d":
      debug = True

  try:
    config = mtaconf(conffile)
    for key in overrides:
      config.process_fields([key] + overrides[key].split(":"))
  except (OSError, ConfigError) as x:
    print("toymta:", x, file=sys.stderr)
    return 1

  # The local name only gets looked up once; every session shares it.
  if config.hostname is None:
    config.hostname = socket.getfqdn()

  # Open debugging and logging while we still can.
  if config.debug is not None:
    try:
      debugstream = open(config.debug, "a")
    except OSError as x:
      print("toymta:", x, file=sys.stderr)
      return 1
  elif debug:
    debugstream = sys.stdout
  else:
    debugstream = None
  if debugstream is not None:
    smtp.server.debugstream = debugstream
    smtp.client.debugstream = debugstream
    sender.exchanger.debugstream = debugstream
  syslog.openlog("toymta", facility=syslog.LOG_MAIL)

  # Get the event loop...
  loop = asyncio.new_event_loop()
  asyncio.set_event_loop(loop)

  # Create a listener...
  acceptor = listener(config)
  try:
    server = loop.run_until_complete(acceptor.start(loop))
  except OSError as x:
    syslog.syslog(syslog.LOG_ERR, "can't listen on %s port %d: %s" %
                  (config.address, config.port, x))
    print("toymta:", x, file=sys.stderr)
    return 1

  syslog.syslog(syslog.LOG_INFO, "listening on %s port %d as %s" %
                (config.address, config.port, config.hostname))

  try:
    loop.run_forever()
  except KeyboardInterrupt:
    pass

  # Close the server, and any sessions still hanging on.
  server.close()
  for s in list(acceptor.sessions):
    s.transport.close()
  loop.run_until_complete(server.wait_closed())
  loop.close()
  if config.debug is not None:
    debugstream.close()
  return 0

if __name__ == "__main__":
  sys.exit(main())
