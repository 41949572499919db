"""
JSON Web Signature envelopes for ACME requests (RFC 7515 flattened JSON
serialization, as RFC 8555 section 6.2 requires).
"""
import json

import attr

from txdnsacme.keys import SIGNATURE_ALGORITHM
from txdnsacme.util import b64url, canonical_json


@attr.s(frozen=True)
class JWSMessage(object):
    """
    A signed ACME request body.

    All three members are unpadded base64url text.
    """
    protected = attr.ib()
    payload = attr.ib()
    signature = attr.ib()

    def signing_input(self):
        """
        The ASCII bytes the signature is computed over.
        """
        return u'{}.{}'.format(self.protected, self.payload).encode('ascii')

    def to_json(self):
        return {
            u'protected': self.protected,
            u'payload': self.payload,
            u'signature': self.signature,
            }

    def json_dumps(self):
        """
        Serialize for use as an HTTP request body.

        :rtype: bytes
        """
        return json.dumps(self.to_json()).encode('ascii')


def protected_header(url, nonce, key=None, kid=None):
    """
    Build the protected header of an ACME request.

    Exactly one of ``key`` and ``kid`` must be given: requests creating an
    account embed the public JWK, everything else references the account URL.

    :param str url: The URL the request is sent to.
    :param str nonce: A fresh anti-replay nonce.
    :param ~txdnsacme.keys.ECKeyPair key: The key to embed as ``jwk``.
    :param str kid: The account URL.

    :rtype: dict
    """
    if (key is None) == (kid is None):
        raise ValueError('Exactly one of key and kid is required')
    header = {
        u'alg': SIGNATURE_ALGORITHM,
        u'nonce': nonce,
        u'url': url,
        }
    if kid is None:
        header[u'jwk'] = key.to_jwk(public_only=True)
    else:
        header[u'kid'] = kid
    return header


def build(header, payload, key):
    """
    Sign ``payload`` into a `JWSMessage`.

    :param dict header: The protected header fields.
    :param payload: The JSON payload; ``None`` encodes as the empty string
        used for POST-as-GET requests.
    :param ~txdnsacme.keys.ECKeyPair key: The signing key.

    :rtype: JWSMessage
    """
    protected = b64url(canonical_json(header))
    if payload is None:
        encoded_payload = u''
    else:
        encoded_payload = b64url(canonical_json(payload))
    signing_input = u'{}.{}'.format(protected, encoded_payload)
    return JWSMessage(
        protected=protected,
        payload=encoded_payload,
        signature=b64url(key.sign(signing_input, raw=True)))


__all__ = ['JWSMessage', 'build', 'protected_header']
