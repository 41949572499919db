"""
`~txdnsacme.interfaces.ITXTResolver` implementation using ``twisted.names``.
"""
import attr
from twisted.names import client, dns
from twisted.names.error import DNSNameError
from zope.interface import implementer

from txdnsacme.interfaces import ITXTResolver


def _txt_values(result):
    """
    Extract the TXT values from a ``lookupText`` result, ignoring anything
    else in the answer section (like the CNAMEs that led there).
    """
    answers, authority, additional = result
    return [
        b''.join(record.payload.data).decode('utf-8', 'replace')
        for record in answers
        if record.type == dns.TXT]


def _no_such_name(failure):
    failure.trap(DNSNameError)
    return []


@implementer(ITXTResolver)
@attr.s(hash=False)
class NamesTXTResolver(object):
    """
    Resolve TXT records with a ``twisted.names`` resolver.

    A name that does not exist resolves to no records; other DNS failures are
    passed on to the caller.

    :param resolver: An ``IResolver`` provider; by default the system
        resolver from ``twisted.names.client.getResolver``.
    """
    _resolver = attr.ib(default=attr.Factory(client.getResolver))

    def resolve_txt(self, name):
        d = self._resolver.lookupText(name)
        d.addCallback(_txt_values)
        d.addErrback(_no_such_name)
        return d


__all__ = ['NamesTXTResolver']
