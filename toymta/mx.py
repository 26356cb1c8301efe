import dns.asyncresolver
import dns.exception
import dns.name
import dns.rdatatype
import dns.resolver
import syslog

# Look up the mail exchangers for a domain and return a dictionary of
# exchanger names, keyed by preference.   If there's no MX record and
# implicit is set, the domain itself is the exchanger if it has an
# address (RFC 5321 section 5.1).   Returns None if the domain can't
# receive mail.
async def get_exchanger_list(domain, resolver=None, implicit=False):
  if resolver is None:
    resolver = dns.asyncresolver.Resolver()
  mxs = {}

  try:
    answer = await resolver.resolve(domain, "MX")

  except dns.resolver.NoAnswer:
    if not implicit:
      return None

    # No answer means there's no MX record, so look for an A or
    # AAAA record.
    if await has_address(resolver, domain):
      return { 0: [domain] }
    return None

  except dns.exception.DNSException as x:
    syslog.syslog(syslog.LOG_INFO, "MX lookup for %s failed: %s" % (domain, x))
    return None

  for mx in answer:
    if mx.rdtype != dns.rdatatype.MX:
      continue
    # A null MX (RFC 7505) says the domain doesn't take mail at all.
    if mx.exchange == dns.name.root:
      return None
    name = mx.exchange.to_text(omit_final_dot=True)
    if mx.preference in mxs:
      mxs[mx.preference].append(name)
    else:
      mxs[mx.preference] = [name]

  if len(mxs) == 0:
    return None
  return mxs

# Given a domain, return the name of the exchanger with the best
# (lowest) preference, or None.   Among exchangers with the same
# preference the first one in the answer wins; we don't try the
# others.
async def get_exchanger(domain, resolver=None, implicit=False):
  mxs = await get_exchanger_list(domain, resolver, implicit)
  if mxs is None:
    return None
  preferences = list(mxs.keys())
  preferences.sort()
  return mxs[preferences[0]][0]

async def has_address(resolver, name):
  for rdtype in ("A", "AAAA"):
    try:
      answer = await resolver.resolve(name, rdtype, raise_on_no_answer=False)
    except dns.exception.DNSException:
      continue
    if answer.rrset is not None:
      return True
  return False
