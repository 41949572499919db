from operator import attrgetter

from testtools import TestCase
from testtools.matchers import AfterPreprocessing, Equals, IsInstance
from testtools.twistedsupport import failed, succeeded
from twisted.internet.defer import fail, succeed
from twisted.names import dns
from twisted.names.error import DNSNameError, DNSServerError
from zope.interface.verify import verifyObject

from txdnsacme.interfaces import ITXTResolver
from txdnsacme.resolver import NamesTXTResolver


def _txt(name, *strings):
    return dns.RRHeader(
        name=name, type=dns.TXT, payload=dns.Record_TXT(*strings))


class FakeNamesResolver(object):
    """
    Just enough of ``twisted.names`` ``IResolver`` for the TXT lookups.
    """
    def __init__(self, answers=None, error=None):
        self.answers = answers or []
        self.error = error
        self.names = []

    def lookupText(self, name, timeout=None):  # noqa
        self.names.append(name)
        if self.error is not None:
            return fail(self.error)
        return succeed((self.answers, [], []))


class NamesTXTResolverTests(TestCase):
    """
    `~txdnsacme.resolver.NamesTXTResolver` looks up TXT records with
    ``twisted.names``.
    """
    name = u'_acme-challenge.example.com'

    def test_interface(self):
        verifyObject(ITXTResolver, NamesTXTResolver(FakeNamesResolver()))

    def test_values(self):
        """
        Every TXT record is one value.
        """
        names = FakeNamesResolver([
            _txt(self.name, b'first'),
            _txt(self.name, b'second'),
            ])
        resolver = NamesTXTResolver(names)
        self.assertThat(
            resolver.resolve_txt(self.name),
            succeeded(Equals([u'first', u'second'])))
        self.assertThat(names.names, Equals([self.name]))

    def test_multiple_strings(self):
        """
        The character strings of one record are joined.
        """
        resolver = NamesTXTResolver(FakeNamesResolver([
            _txt(self.name, b'abc', b'def')]))
        self.assertThat(
            resolver.resolve_txt(self.name), succeeded(Equals([u'abcdef'])))

    def test_ignores_other_records(self):
        """
        CNAMEs followed on the way are not TXT values.
        """
        resolver = NamesTXTResolver(FakeNamesResolver([
            dns.RRHeader(
                name=self.name, type=dns.CNAME,
                payload=dns.Record_CNAME(b'other.example.net')),
            _txt(u'other.example.net', b'value'),
            ]))
        self.assertThat(
            resolver.resolve_txt(self.name), succeeded(Equals([u'value'])))

    def test_no_such_name(self):
        """
        NXDOMAIN means there are no records.
        """
        resolver = NamesTXTResolver(
            FakeNamesResolver(error=DNSNameError()))
        self.assertThat(resolver.resolve_txt(self.name), succeeded(Equals([])))

    def test_other_errors(self):
        """
        Other DNS failures are passed on.
        """
        resolver = NamesTXTResolver(
            FakeNamesResolver(error=DNSServerError()))
        self.assertThat(
            resolver.resolve_txt(self.name),
            failed(AfterPreprocessing(
                attrgetter('value'), IsInstance(DNSServerError))))
