import email.utils
import mailbox
import os
import syslog
import time

from toymta import sender

LOCAL_FAILURE = "451 Local error in processing"
RELAY_FAILURE = "554 unable to relay successfully"

def parse_address(address):
  parts = address.split("@")
  if len(parts) != 2:
    return None
  return parts

# Local mailboxes are plain mbox files, one per local part, in the
# configured mailbox directory.   Each message gets the usual "From "
# envelope line and a Date: header ahead of the body as received.
class mboxwriter:
  def __init__(self, directory):
    self.directory = directory

  def mailbox_path(self, user):
    # The local part names a file; don't let it name anything outside
    # the mailbox directory.
    if (user == "" or user.startswith(".") or os.sep in user or
        (os.altsep and os.altsep in user)):
      return None
    return os.path.join(self.directory, user)

  def format(self, reverse_path, body, now=None):
    if now is None:
      now = time.time()
    fromline = "From %s %s\n" % (reverse_path, time.asctime(time.localtime(now)))
    dateline = "Date: %s\n" % email.utils.formatdate(now, localtime=True)
    return bytes(fromline + dateline + body, "utf-8")

  # Returns True if the message was written.
  def deliver(self, envelope):
    address = parse_address(envelope.forward_path)
    if address is None:
      syslog.syslog(syslog.LOG_ERR,
                    "Validated address fails to parse: %s" % envelope.forward_path)
      return False
    path = self.mailbox_path(address[0])
    if path is None:
      syslog.syslog(syslog.LOG_INFO, "No mailbox for address %s" %
                    envelope.forward_path)
      return False

    try:
      box = mailbox.mbox(path, create=True)
      try:
        box.add(self.format(envelope.reverse_path, envelope.body))
        box.flush()
      finally:
        box.close()
    except (OSError, mailbox.Error) as e:
      syslog.syslog(syslog.LOG_ERR, "Delivery to %s failed: %s" % (path, str(e)))
      return False
    syslog.syslog(syslog.LOG_INFO, "Delivered mail from %s to %s" %
                  (envelope.reverse_path, path))
    return True

# The router looks at the recipient's domain and either writes the
# message to a local mailbox or relays it to the domain's exchanger.
# It makes that choice once per message, and there's no retry: the
# status it returns is the final word on the message.
class router:
  def __init__(self, config, relay=None, resolver=None):
    self.config = config
    self.writer = mboxwriter(config.mailboxes)
    self.resolver = resolver
    if relay is None:
      relay = sender.relay
    self.relay = relay

  def is_local(self, address):
    address = parse_address(address)
    if address is None:
      return False
    return address[1].lower() in self.config.local_domains

  # Returns None on success, otherwise the reply to send.
  async def deliver(self, envelope):
    syslog.syslog(syslog.LOG_INFO, "Mail from %s to %s" %
                  (envelope.reverse_path, envelope.forward_path))
    if self.is_local(envelope.forward_path):
      if self.writer.deliver(envelope):
        return None
      return LOCAL_FAILURE
    if await self.relay(self.config, envelope, self.resolver):
      return None
    return RELAY_FAILURE
