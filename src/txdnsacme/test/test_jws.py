import json

from hypothesis import given
from hypothesis import strategies as s
from testtools import ExpectedException, TestCase
from testtools.matchers import Contains, Equals, HasLength, Not

from txdnsacme import jws
from txdnsacme.test.strategies import urls
from txdnsacme.test.test_keys import EC_KEY, _verify_raw
from txdnsacme.util import b64url_decode


def _decode(segment):
    return json.loads(b64url_decode(segment).decode('utf-8'))


class ProtectedHeaderTests(TestCase):
    """
    `~txdnsacme.jws.protected_header` builds the ACME protected header.
    """
    def test_jwk(self):
        """
        Without a ``kid`` the public JWK is embedded.
        """
        header = jws.protected_header(
            u'https://ca/new-account', u'nonce-1', key=EC_KEY)
        self.assertThat(
            header,
            Equals({
                u'alg': u'ES256',
                u'nonce': u'nonce-1',
                u'url': u'https://ca/new-account',
                u'jwk': EC_KEY.to_jwk(),
                }))
        self.assertThat(header[u'jwk'], Not(Contains(u'd')))

    def test_kid(self):
        header = jws.protected_header(
            u'https://ca/new-order', u'nonce-2', kid=u'https://ca/acct/1')
        self.assertThat(
            header,
            Equals({
                u'alg': u'ES256',
                u'nonce': u'nonce-2',
                u'url': u'https://ca/new-order',
                u'kid': u'https://ca/acct/1',
                }))

    def test_exactly_one(self):
        with ExpectedException(ValueError):
            jws.protected_header(u'https://ca/', u'n')
        with ExpectedException(ValueError):
            jws.protected_header(
                u'https://ca/', u'n', key=EC_KEY, kid=u'https://ca/acct/1')


class BuildTests(TestCase):
    """
    `~txdnsacme.jws.build` signs a payload into the flattened JSON
    serialization.
    """
    def setUp(self):
        super(BuildTests, self).setUp()
        self.header = jws.protected_header(
            u'https://ca/new-order', u'nonce-1', kid=u'https://ca/acct/1')

    def test_segments(self):
        message = jws.build(self.header, {u'b': 1, u'a': [u'x']}, EC_KEY)
        self.assertThat(_decode(message.protected), Equals(self.header))
        self.assertThat(
            b64url_decode(message.payload), Equals(b'{"a":["x"],"b":1}'))

    def test_signature(self):
        """
        The signature is a raw ES256 signature over
        ``protected + "." + payload``.
        """
        message = jws.build(self.header, {u'a': 1}, EC_KEY)
        signature = b64url_decode(message.signature)
        self.assertThat(signature, HasLength(64))
        _verify_raw(EC_KEY, signature, message.signing_input())
        self.assertThat(
            message.signing_input(),
            Equals(u'{}.{}'.format(
                message.protected, message.payload).encode('ascii')))

    def test_post_as_get(self):
        """
        A ``None`` payload is encoded as the empty string.
        """
        message = jws.build(self.header, None, EC_KEY)
        self.assertThat(message.payload, Equals(u''))
        _verify_raw(
            EC_KEY, b64url_decode(message.signature),
            message.signing_input())

    def test_empty_object(self):
        """
        An empty object, as sent to answer a challenge, is ``e30``.
        """
        message = jws.build(self.header, {}, EC_KEY)
        self.assertThat(message.payload, Equals(u'e30'))

    def test_json_dumps(self):
        message = jws.build(self.header, {}, EC_KEY)
        self.assertThat(
            json.loads(message.json_dumps().decode('ascii')),
            Equals({
                u'protected': message.protected,
                u'payload': u'e30',
                u'signature': message.signature,
                }))

    @given(s.dictionaries(
        s.text(max_size=10), s.one_of(s.integers(), s.text(max_size=20)),
        max_size=5))
    def test_url_safe(self, payload):
        """
        No segment ever contains ``+``, ``/`` or ``=``.
        """
        message = jws.build(self.header, payload, EC_KEY)
        for segment in message.to_json().values():
            for character in u'+/=':
                self.assertThat(segment, Not(Contains(character)))

    @given(urls())
    def test_url_header(self, url):
        """
        The ``url`` header is the request URL, as text.
        """
        header = jws.protected_header(url.asText(), u'nonce', kid=u'kid')
        message = jws.build(header, None, EC_KEY)
        protected = json.loads(
            b64url_decode(message.protected).decode('utf-8'))
        self.assertThat(protected[u'url'], Equals(url.asText()))
