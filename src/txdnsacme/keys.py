"""
P-256 key pairs for ACME accounts and certificate keys.

The key material is handled as raw, fixed width, big-endian byte strings as
JOSE wants it: the private scalar ``d`` and the public point ``(x, y)``, 32
bytes each.
"""
import hashlib

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature)

from txdnsacme.csr import csr_for_domains, csr_pem, encode_csr
from txdnsacme.errors import InvalidKeyMaterial
from txdnsacme.util import b64url, b64url_decode, canonical_json

#: Size in bytes of a P-256 coordinate, scalar and signature component.
COORDINATE_SIZE = 32

CURVE_NAME = u'P-256'
SIGNATURE_ALGORITHM = u'ES256'


def _to_bytes(number):
    return number.to_bytes(COORDINATE_SIZE, 'big')


def _from_bytes(name, value):
    if not isinstance(value, bytes):
        raise InvalidKeyMaterial(
            '{} must be bytes, not {}'.format(name, type(value).__name__))
    if len(value) != COORDINATE_SIZE:
        raise InvalidKeyMaterial(
            '{} must be {} bytes long, got {}'.format(
                name, COORDINATE_SIZE, len(value)))
    return int.from_bytes(value, 'big')


class ECKeyPair(object):
    """
    A P-256 key pair.

    Owned by exactly one identity: the ACME account, or the domain the
    certificate is issued for.

    :param key: A ``cryptography`` elliptic curve private key on SECP256R1.
    """
    def __init__(self, key):
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise InvalidKeyMaterial('Not an elliptic curve private key')
        if not isinstance(key.curve, ec.SECP256R1):
            raise InvalidKeyMaterial(
                'Only P-256 keys are supported, got {}'.format(key.curve.name))
        self._key = key
        private_numbers = key.private_numbers()
        public_numbers = private_numbers.public_numbers
        self.d = _to_bytes(private_numbers.private_value)
        self.x = _to_bytes(public_numbers.x)
        self.y = _to_bytes(public_numbers.y)

    def __repr__(self):
        return '<ECKeyPair thumbprint={}>'.format(self.thumbprint())

    def __eq__(self, other):
        if not isinstance(other, ECKeyPair):
            return NotImplemented
        return (self.d, self.x, self.y) == (other.d, other.x, other.y)

    def __ne__(self, other):
        result = self.__eq__(other)
        if result is NotImplemented:
            return result
        return not result

    __hash__ = None

    @classmethod
    def generate(cls):
        """
        Generate a fresh P-256 key pair.
        """
        return cls(ec.generate_private_key(ec.SECP256R1(), default_backend()))

    @classmethod
    def generate_or_load(cls, d=None, x=None, y=None):
        """
        Wrap existing key material or, when none is given, generate a new key.

        Either all of ``d``, ``x`` and ``y`` are given, or none of them;
        anything else is rejected rather than silently replaced by a new key.

        :param bytes d: The private scalar.
        :param bytes x: The X coordinate of the public point.
        :param bytes y: The Y coordinate of the public point.

        :raises InvalidKeyMaterial: When only some of the components are
            given, or they do not form a consistent P-256 key pair.
        """
        supplied = [value for value in (d, x, y) if value]
        if not supplied:
            return cls.generate()
        if len(supplied) != 3:
            raise InvalidKeyMaterial(
                'd, x and y must be supplied together')

        private_value = _from_bytes('d', d)
        public_numbers = ec.EllipticCurvePublicNumbers(
            _from_bytes('x', x), _from_bytes('y', y), ec.SECP256R1())
        try:
            public_numbers.public_key(default_backend())
        except ValueError:
            raise InvalidKeyMaterial('(x, y) is not a point on P-256')
        try:
            key = ec.derive_private_key(
                private_value, ec.SECP256R1(), default_backend())
        except ValueError:
            raise InvalidKeyMaterial('d is not a valid P-256 scalar')
        if key.public_key().public_numbers() != public_numbers:
            raise InvalidKeyMaterial('(x, y) is not the public point of d')
        return cls(key)

    @classmethod
    def from_pem(cls, data, password=None):
        """
        Load a key pair from a PEM encoded private key (SEC1 or PKCS#8).
        """
        try:
            key = serialization.load_pem_private_key(
                data, password=password, backend=default_backend())
        except (ValueError, TypeError, UnsupportedAlgorithm) as error:
            raise InvalidKeyMaterial(str(error))
        return cls(key)

    @classmethod
    def from_jwk(cls, jwk):
        """
        Load a key pair from a private JWK as produced by `to_jwk`.
        """
        if jwk.get(u'kty') != u'EC' or jwk.get(u'crv') != CURVE_NAME:
            raise InvalidKeyMaterial('Not a P-256 JWK: {!r}'.format(
                {k: v for k, v in jwk.items() if k != u'd'}))
        if u'd' not in jwk:
            raise InvalidKeyMaterial('JWK has no private scalar')
        try:
            components = [
                b64url_decode(jwk[name]) for name in (u'd', u'x', u'y')]
        except (KeyError, ValueError, TypeError) as error:
            raise InvalidKeyMaterial('Malformed JWK: {}'.format(error))
        return cls.generate_or_load(*components)

    @property
    def key(self):
        """
        The underlying ``cryptography`` private key.
        """
        return self._key

    def public_key(self):
        return self._key.public_key()

    def sign(self, message, raw=True):
        """
        Sign ``message`` with ECDSA over SHA-256.

        :param bytes message: The data to sign; text is encoded as ASCII.
        :param bool raw: Return the JOSE ``ES256`` form, ``r || s`` with both
            integers left-padded to 32 bytes, instead of the DER
            ``ECDSA-Sig-Value``.

        :rtype: bytes
        """
        if isinstance(message, str):
            message = message.encode('ascii')
        signature = self._key.sign(message, ec.ECDSA(hashes.SHA256()))
        if not raw:
            return signature
        r, s = decode_dss_signature(signature)
        return _to_bytes(r) + _to_bytes(s)

    def to_jwk(self, public_only=True):
        """
        Export the key as a JWK.

        :param bool public_only: Leave out the private scalar ``d``.

        :rtype: dict
        """
        jwk = {
            u'kty': u'EC',
            u'crv': CURVE_NAME,
            u'x': b64url(self.x),
            u'y': b64url(self.y),
            }
        if not public_only:
            jwk[u'd'] = b64url(self.d)
        return jwk

    def thumbprint(self):
        """
        The RFC 7638 thumbprint of the public key, base64url encoded.

        :rtype: str
        """
        return b64url(
            hashlib.sha256(canonical_json(self.to_jwk())).digest())

    def to_csr(self, domains, subject=None, raw=True):
        """
        Build a certificate signing request for ``domains`` with this key.

        :param list domains: The DNS names; the first is also the subject CN.
        :param ~txdnsacme.csr.Subject subject: The other subject fields.
        :param bool raw: Return base64url text of the DER request, as the ACME
            finalize payload wants it, instead of PEM.
        """
        der = csr_for_domains(domains, self, subject=subject)
        if raw:
            return encode_csr(der)
        return csr_pem(der)

    def to_private_pem(self):
        """
        Export the private key as SEC1 PEM (``BEGIN EC PRIVATE KEY``).

        :rtype: bytes
        """
        return self._key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption())


__all__ = ['COORDINATE_SIZE', 'ECKeyPair', 'SIGNATURE_ALGORITHM']
