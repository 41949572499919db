from hypothesis import given
from hypothesis import strategies as s
from testtools import ExpectedException, TestCase
from testtools.matchers import Contains, Equals, Is, Not
from twisted.internet.defer import Deferred
from twisted.python.url import URL

from txdnsacme.test.strategies import urls
from txdnsacme.util import (
    b64url, b64url_decode, canonical_json, check_directory_url_type, tap)


class Base64URLTests(TestCase):
    """
    `~txdnsacme.util.b64url` is unpadded, URL-safe base64.
    """
    def test_known(self):
        self.assertThat(b64url(b'\xfb\xff'), Equals(u'-_8'))
        self.assertThat(b64url(b''), Equals(u''))
        self.assertThat(b64url(u'{}'), Equals(u'e30'))

    @given(s.binary())
    def test_alphabet(self, data):
        encoded = b64url(data)
        for character in u'+/=':
            self.assertThat(encoded, Not(Contains(character)))
        self.assertThat(b64url_decode(encoded), Equals(data))


class CanonicalJSONTests(TestCase):
    def test_sorted_compact(self):
        self.assertThat(
            canonical_json({u'y': 1, u'x': [1, 2], u'a': {u'c': 1, u'b': 2}}),
            Equals(b'{"a":{"b":2,"c":1},"x":[1,2],"y":1}'))


class CheckDirectoryURLTypeTests(TestCase):
    def test_url(self):
        check_directory_url_type(URL.fromText(u'https://ca/directory'))

    @given(urls())
    def test_any_url(self, url):
        check_directory_url_type(url)

    def test_text(self):
        with ExpectedException(TypeError):
            check_directory_url_type(u'https://ca/directory')


class TapTests(TestCase):
    """
    `~txdnsacme.util.tap` runs a function in a callback chain without
    changing the result.
    """
    def test_passes_result(self):
        seen = []
        d = Deferred()
        d.addCallback(tap(seen.append))
        results = []
        d.addCallback(results.append)
        d.callback(42)
        self.assertThat(seen, Equals([42]))
        self.assertThat(results, Equals([42]))

    def test_waits(self):
        """
        If the function returns a Deferred, the chain waits for it.
        """
        inner = Deferred()
        d = Deferred()
        d.addCallback(tap(lambda _: inner))
        results = []
        d.addCallback(results.append)
        d.callback(u'result')
        self.assertThat(results, Equals([]))
        inner.callback(None)
        self.assertThat(results, Equals([u'result']))
        self.assertThat(d.result, Is(None))
