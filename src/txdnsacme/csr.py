"""
PKCS#10 (RFC 2986) certificate signing requests for P-256 keys.

The request is encoded by hand with `txdnsacme.der`::

    CertificationRequest ::= SEQUENCE {
        certificationRequestInfo  SEQUENCE {
            version               INTEGER 0,
            subject               Name,
            subjectPKInfo         SubjectPublicKeyInfo,
            attributes        [0] SET OF Attribute  -- extensionRequest
            },
        signatureAlgorithm        ecdsa-with-SHA256,
        signature                 BIT STRING        -- ECDSA-Sig-Value
        }
"""
import base64

import attr

from txdnsacme import der
from txdnsacme.util import b64url

OID_COUNTRY = '2.5.4.6'
OID_STATE = '2.5.4.8'
OID_LOCALITY = '2.5.4.7'
OID_ORGANIZATION = '2.5.4.10'
OID_ORGANIZATIONAL_UNIT = '2.5.4.11'
OID_COMMON_NAME = '2.5.4.3'
OID_EMAIL_ADDRESS = '1.2.840.113549.1.9.1'
OID_EXTENSION_REQUEST = '1.2.840.113549.1.9.14'
OID_SUBJECT_ALT_NAME = '2.5.29.17'
OID_EC_PUBLIC_KEY = '1.2.840.10045.2.1'
OID_PRIME256V1 = '1.2.840.10045.3.1.7'
OID_ECDSA_WITH_SHA256 = '1.2.840.10045.4.3.2'

#: RFC 5280 upper bound for a common name.
MAX_COMMON_NAME_LENGTH = 64

#: Subject CN used when the first name does not fit in a CN.
LONG_NAME_COMMON_NAME = u'san.too.long.invalid'

_DNS_NAME_TAG = 2


def _country_code(instance, attribute, value):
    if value is not None and len(value) != 2:
        raise ValueError(
            'country must be a two letter code, got {!r}'.format(value))


@attr.s(frozen=True)
class Subject(object):
    """
    The subject distinguished name fields of a request, besides the common
    name, which is always the first requested domain.

    Fields left as ``None`` are not included.
    """
    country = attr.ib(default=None, validator=_country_code)
    state = attr.ib(default=None)
    locality = attr.ib(default=None)
    organization = attr.ib(default=None)
    organizational_unit = attr.ib(default=None)
    email = attr.ib(default=None)

    def to_der(self, common_name):
        """
        Encode the subject ``Name`` with the given common name.
        """
        rdns = []
        if self.country is not None:
            rdns.append(_rdn(OID_COUNTRY, der.printable_string(self.country)))
        for oid, value in [
                (OID_STATE, self.state),
                (OID_LOCALITY, self.locality),
                (OID_ORGANIZATION, self.organization),
                (OID_ORGANIZATIONAL_UNIT, self.organizational_unit),
                (OID_COMMON_NAME, common_name)]:
            if value is not None:
                rdns.append(_rdn(oid, der.utf8_string(value)))
        if self.email is not None:
            rdns.append(_rdn(OID_EMAIL_ADDRESS, der.ia5_string(self.email)))
        return der.sequence(*rdns)


def _rdn(oid, value):
    return der.set_of(der.sequence(der.object_identifier(oid), value))


def _subject_public_key_info(key):
    return der.sequence(
        der.sequence(
            der.object_identifier(OID_EC_PUBLIC_KEY),
            der.object_identifier(OID_PRIME256V1)),
        der.bit_string(b'\x04' + key.x + key.y))


def _extension_request(domains):
    general_names = der.sequence(*[
        der.context(_DNS_NAME_TAG, name.encode('ascii'), constructed=False)
        for name in domains])
    extensions = der.sequence(
        der.sequence(
            der.object_identifier(OID_SUBJECT_ALT_NAME),
            der.octet_string(general_names)))
    return der.sequence(
        der.object_identifier(OID_EXTENSION_REQUEST),
        der.set_of(extensions))


def csr_for_domains(domains, key, subject=None):
    """
    Build a DER encoded certificate signing request for ``domains``.

    :param list domains: One or more DNS names (subjectAltName); the first one
        is also used as the subject common name.
    :param ~txdnsacme.keys.ECKeyPair key: The key of the future certificate;
        the request is signed with it.
    :param Subject subject: The remaining subject fields, if any.

    :rtype: bytes
    """
    domains = list(domains)
    if len(domains) == 0:
        raise ValueError('Must have at least one name')
    if len(set(domains)) != len(domains):
        raise ValueError('Duplicate names in {!r}'.format(domains))
    if subject is None:
        subject = Subject()
    if len(domains[0]) > MAX_COMMON_NAME_LENGTH:
        common_name = LONG_NAME_COMMON_NAME
    else:
        common_name = domains[0]

    info = der.sequence(
        der.integer(0),
        subject.to_der(common_name),
        _subject_public_key_info(key),
        der.context(0, _extension_request(domains)))
    return der.sequence(
        info,
        der.sequence(der.object_identifier(OID_ECDSA_WITH_SHA256)),
        der.bit_string(key.sign(info, raw=False)))


def encode_csr(csr):
    """
    Encode a DER CSR as JOSE Base-64, as the ACME finalize request wants it.

    :rtype: str
    """
    return b64url(csr)


def csr_pem(csr):
    """
    Wrap a DER CSR in PEM armour.

    :rtype: bytes
    """
    encoded = base64.b64encode(csr)
    lines = [encoded[i:i + 64] for i in range(0, len(encoded), 64)]
    return (
        b'-----BEGIN CERTIFICATE REQUEST-----\n' +
        b'\n'.join(lines) +
        b'\n-----END CERTIFICATE REQUEST-----\n')


__all__ = ['Subject', 'csr_for_domains', 'csr_pem', 'encode_csr']
