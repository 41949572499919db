"""
Utilities for testing with txdnsacme.

`FakeCA` is an in-memory ACME server behind the
`~txdnsacme.interfaces.IHTTPTransport` interface, and `FakeResolver` an
in-memory DNS zone behind `~txdnsacme.interfaces.ITXTResolver`, so whole
issuance passes can be run synchronously against a
``twisted.internet.task.Clock``.
"""
import json
from itertools import count

import attr
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    encode_dss_signature)
from testtools import TestCase
from twisted.internet import reactor
from twisted.internet.defer import fail, succeed
from twisted.web import http
from twisted.web.http_headers import Headers
from zope.interface import implementer

from txdnsacme.errors import TransportError
from txdnsacme.interfaces import IHTTPTransport, ITXTResolver
from txdnsacme.keys import COORDINATE_SIZE
from txdnsacme.messages import (
    CHALLENGE_DNS01,
    IDENTIFIER_DNS,
    STATUS_INVALID,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_READY,
    STATUS_VALID,
    )
from txdnsacme.transport import (
    JOSE_CONTENT_TYPE,
    JSON_CONTENT_TYPE,
    JSON_ERROR_CONTENT_TYPE,
    PEM_CHAIN_TYPE,
    HTTPResponse,
    )
from txdnsacme.util import b64url_decode

CA_ROOT = u'https://ca'
DIRECTORY_URL = CA_ROOT + u'/directory'
NEW_NONCE_URL = CA_ROOT + u'/new-nonce'
NEW_ACCOUNT_URL = CA_ROOT + u'/new-account'
NEW_ORDER_URL = CA_ROOT + u'/new-order'
TERMS_OF_SERVICE_URL = CA_ROOT + u'/terms'

#: A certificate chain for the fake CA to hand out.  The certificates are not
#: real, but they are well formed PEM.
FIXTURE_CHAIN = (
    b'-----BEGIN CERTIFICATE-----\n'
    b'MIIBfakeLeafCertificateForTxdnsacmeTests0=\n'
    b'-----END CERTIFICATE-----\n'
    b'-----BEGIN CERTIFICATE-----\n'
    b'MIIBfakeIssuerCertificateForTxdnsacmeTest=\n'
    b'-----END CERTIFICATE-----\n')

_PROBLEM_NS = u'urn:ietf:params:acme:error:'


class TXDNSACMETestCase(TestCase):
    """
    Common code for all tests for the txdnsacme project.
    """

    def tearDown(self):
        super(TXDNSACMETestCase, self).tearDown()

        # Make sure the main reactor is clean after each test.
        junk = []
        for delayed_call in reactor.getDelayedCalls():
            junk.append(delayed_call.func)
            delayed_call.cancel()
        if junk:
            raise AssertionError(
                'Reactor is not clean. DelayedCalls: %s' % (junk,))


def _json_response(code, body, content_type=JSON_CONTENT_TYPE, headers=None):
    h = Headers({b'content-type': [content_type]})
    for name, value in (headers or {}).items():
        h.setRawHeaders(name, [value.encode('ascii')])
    return HTTPResponse(
        code=code, headers=h, body=json.dumps(body).encode('utf-8'))


def _problem(code, typ, detail):
    return _json_response(
        code, {u'type': _PROBLEM_NS + typ, u'detail': detail},
        content_type=JSON_ERROR_CONTENT_TYPE)


@attr.s
class RecordedRequest(object):
    """
    A request as seen by `FakeCA`; ``payload`` is the decoded JWS payload
    (``None`` for unsigned requests, ``u''`` for POST-as-GET).
    """
    method = attr.ib()
    url = attr.ib()
    payload = attr.ib(default=None)
    protected = attr.ib(default=None)


@attr.s
class _FakeChallenge(object):
    url = attr.ib()
    token = attr.ib()
    status = attr.ib(default=STATUS_PENDING)
    error = attr.ib(default=None)
    results = attr.ib(default=None)

    def advance(self):
        if self.results:
            self.status = (
                self.results.pop(0) if len(self.results) > 1
                else self.results[0])
            if self.status == STATUS_INVALID:
                self.error = {
                    u'type': _PROBLEM_NS + u'incorrectResponse',
                    u'detail': u'No TXT record found'}

    def to_json(self):
        body = {
            u'type': CHALLENGE_DNS01,
            u'url': self.url,
            u'token': self.token,
            u'status': self.status,
            }
        if self.error is not None:
            body[u'error'] = self.error
        return body


@attr.s
class _FakeAuthorization(object):
    url = attr.ib()
    domain = attr.ib()
    challenge = attr.ib()
    offer_dns01 = attr.ib(default=True)

    @property
    def status(self):
        status = self.challenge.status
        if status in (STATUS_VALID, STATUS_INVALID):
            return status
        return STATUS_PENDING

    def to_json(self):
        wildcard = self.domain.startswith(u'*.')
        value = self.domain[2:] if wildcard else self.domain
        challenges = [{
            u'type': u'http-01',
            u'url': self.challenge.url + u'/http',
            u'token': self.challenge.token,
            u'status': STATUS_PENDING,
            }]
        if self.offer_dns01:
            challenges.append(self.challenge.to_json())
        body = {
            u'status': self.status,
            u'identifier': {u'type': IDENTIFIER_DNS, u'value': value},
            u'challenges': challenges,
            }
        if wildcard:
            body[u'wildcard'] = True
        return body


@attr.s
class _FakeOrder(object):
    url = attr.ib()
    account = attr.ib()
    domains = attr.ib()
    authorizations = attr.ib()
    finalize = attr.ib()
    fixed_status = attr.ib(default=None)
    results = attr.ib(default=None)
    certificate = attr.ib(default=None)
    error = attr.ib(default=None)

    @property
    def status(self):
        if self.fixed_status is not None:
            return self.fixed_status
        statuses = [authz.status for authz in self.authorizations]
        if STATUS_INVALID in statuses:
            return STATUS_INVALID
        if all(status == STATUS_VALID for status in statuses):
            return STATUS_READY
        return STATUS_PENDING

    def to_json(self):
        body = {
            u'status': self.status,
            u'identifiers': [
                {u'type': IDENTIFIER_DNS, u'value': domain}
                for domain in self.domains],
            u'authorizations': [authz.url for authz in self.authorizations],
            u'finalize': self.finalize,
            }
        if self.certificate is not None:
            body[u'certificate'] = self.certificate
        if self.error is not None:
            body[u'error'] = self.error
        return body


@implementer(IHTTPTransport)
class FakeCA(object):
    """
    An ACME server that keeps all of its state in memory.

    Request signatures, nonces and CSRs are checked like a real server would.

    :param validation_results: The statuses a challenge goes through on
        successive polls after it was answered; the last one repeats.
    :param order_results: The statuses an order goes through on successive
        polls after it was finalized; the last one repeats.
    :param str certificate_url: Where certificates are served, formatted
        with the order number.
    :param bytes certificate_chain: The PEM chain served for every
        certificate.
    :param list no_dns01: Domains whose authorization offers no ``dns-01``
        challenge.
    """
    def __init__(self, validation_results=(STATUS_VALID,),
                 order_results=(STATUS_VALID,),
                 certificate_url=CA_ROOT + u'/cert/{}',
                 certificate_chain=FIXTURE_CHAIN, no_dns01=()):
        self.validation_results = list(validation_results)
        self.order_results = list(order_results)
        self.certificate_url = certificate_url
        self.certificate_chain = certificate_chain
        self.no_dns01 = set(no_dns01)
        self.requests = []
        self.accounts = {}
        self.orders = {}
        self.authorizations = {}
        self.challenges = {}
        self.certificates = {}
        self.csrs = []
        self._nonces = set()
        self._nonce_counter = count(1)
        self._order_counter = count(1)
        self._transport_failures = {}
        self._bad_nonces = 0
        self._problems = {}

    # Failure injection

    def fail_transport(self, url, times=1):
        """
        Fail the next ``times`` requests to ``url`` with a
        `~txdnsacme.errors.TransportError`.
        """
        self._transport_failures[url] = times

    def reject_nonces(self, times=1):
        """
        Answer the next ``times`` signed requests with ``badNonce``.
        """
        self._bad_nonces = times

    def fail_with_problem(self, url, typ, detail=u'Injected failure',
                          code=http.BAD_REQUEST):
        """
        Answer every request to ``url`` with a problem document.
        """
        self._problems[url] = (code, typ, detail)

    # Inspection

    def requests_for(self, method, url):
        """
        The recorded requests with the given method and URL.
        """
        return [
            request for request in self.requests
            if request.method == method and request.url == url]

    def posts(self, url):
        """
        The signed requests to ``url`` that carried a payload (so no
        POST-as-GET).
        """
        return [
            request for request in self.requests_for(u'POST', url)
            if request.payload not in (None, u'')]

    def challenge_urls(self):
        return sorted(self.challenges)

    # IHTTPTransport

    def send_request(self, method, url, headers=None, body=None):
        failures = self._transport_failures.get(url, 0)
        if failures:
            self._transport_failures[url] = failures - 1
            self.requests.append(RecordedRequest(method=method, url=url))
            return fail(TransportError(url=url, reason=u'Injected failure'))
        if method == u'POST':
            return succeed(self._handle_post(url, headers, body))
        self.requests.append(RecordedRequest(method=method, url=url))
        if url in self._problems:
            return succeed(_problem(*self._problems[url]))
        if method == u'HEAD' and url == NEW_NONCE_URL:
            return succeed(self._nonce_response())
        if method == u'GET':
            return succeed(self._get(url))
        return succeed(_problem(
            http.METHOD_NOT_ALLOWED, u'malformed', u'Method not allowed'))

    def _new_nonce(self):
        nonce = u'nonce-{}'.format(next(self._nonce_counter))
        self._nonces.add(nonce)
        return nonce

    def _nonce_response(self):
        return HTTPResponse(
            code=http.OK,
            headers=Headers({b'replay-nonce': [
                self._new_nonce().encode('ascii')]}))

    def _get(self, url):
        if url == DIRECTORY_URL:
            return _json_response(http.OK, {
                u'newNonce': NEW_NONCE_URL,
                u'newAccount': NEW_ACCOUNT_URL,
                u'newOrder': NEW_ORDER_URL,
                u'meta': {u'termsOfService': TERMS_OF_SERVICE_URL},
                })
        if url in self.authorizations:
            return _json_response(
                http.OK, self.authorizations[url].to_json())
        if url in self.challenges:
            challenge = self.challenges[url]
            challenge.advance()
            return _json_response(http.OK, challenge.to_json())
        if url in self.orders:
            order = self.orders[url]
            if order.fixed_status == STATUS_PROCESSING and order.results:
                self._advance_order(order)
            return _json_response(http.OK, order.to_json())
        if url in self.certificates:
            return HTTPResponse(
                code=http.OK,
                headers=Headers({b'content-type': [PEM_CHAIN_TYPE]}),
                body=self.certificates[url])
        return _problem(http.NOT_FOUND, u'malformed', u'No such resource')

    # Signed requests

    def _verify(self, url, headers, body):
        """
        Check a JWS request body.

        :return: ``(protected, payload, account)`` or an error response.
        """
        if headers is None or headers.getRawHeaders(
                b'content-type', [None])[0] != JOSE_CONTENT_TYPE:
            return _problem(
                http.UNSUPPORTED_MEDIA_TYPE, u'malformed',
                u'Expected application/jose+json')
        try:
            jws = json.loads(body.decode('utf-8'))
            protected = json.loads(
                b64url_decode(jws[u'protected']).decode('utf-8'))
            signature = b64url_decode(jws[u'signature'])
        except (ValueError, KeyError, TypeError):
            return _problem(http.BAD_REQUEST, u'malformed', u'Malformed JWS')

        nonce = protected.get(u'nonce')
        if nonce not in self._nonces or self._bad_nonces:
            self._nonces.discard(nonce)
            self._bad_nonces = max(0, self._bad_nonces - 1)
            return _problem(http.BAD_REQUEST, u'badNonce', u'Bad nonce')
        self._nonces.discard(nonce)
        if protected.get(u'url') != url:
            return _problem(
                http.UNAUTHORIZED, u'unauthorized', u'URL mismatch')
        if protected.get(u'alg') != u'ES256':
            return _problem(
                http.BAD_REQUEST, u'badSignatureAlgorithm', u'Use ES256')

        account = None
        if u'jwk' in protected:
            jwk = protected[u'jwk']
            public_key = _public_key(jwk)
        else:
            account = self.accounts.get(protected.get(u'kid'))
            if account is None:
                return _problem(
                    http.BAD_REQUEST, u'accountDoesNotExist',
                    u'No such account')
            public_key = _public_key(account[u'jwk'])
        if public_key is None or len(signature) != 2 * COORDINATE_SIZE:
            return _problem(http.BAD_REQUEST, u'malformed', u'Bad key')
        der_signature = encode_dss_signature(
            int.from_bytes(signature[:COORDINATE_SIZE], 'big'),
            int.from_bytes(signature[COORDINATE_SIZE:], 'big'))
        signing_input = u'{}.{}'.format(
            jws[u'protected'], jws[u'payload']).encode('ascii')
        try:
            public_key.verify(
                der_signature, signing_input, ec.ECDSA(hashes.SHA256()))
        except InvalidSignature:
            return _problem(
                http.BAD_REQUEST, u'malformed', u'Invalid signature')

        if jws[u'payload'] == u'':
            payload = u''
        else:
            payload = json.loads(
                b64url_decode(jws[u'payload']).decode('utf-8'))
        return protected, payload, account

    def _handle_post(self, url, headers, body):
        verified = self._verify(url, headers, body)
        if isinstance(verified, HTTPResponse):
            self.requests.append(RecordedRequest(method=u'POST', url=url))
            return verified
        protected, payload, account = verified
        self.requests.append(RecordedRequest(
            method=u'POST', url=url, payload=payload, protected=protected))
        if url in self._problems:
            return _problem(*self._problems[url])

        if url == NEW_ACCOUNT_URL:
            return self._new_account(protected, payload)
        if account is None:
            return _problem(
                http.BAD_REQUEST, u'malformed', u'kid required')
        if payload == u'':
            return self._get(url)
        if url == NEW_ORDER_URL:
            return self._new_order(account, payload)
        if url in self.challenges:
            return self._answer(self.challenges[url])
        for order in self.orders.values():
            if order.finalize == url:
                return self._finalize(order, payload)
        return _problem(http.NOT_FOUND, u'malformed', u'No such resource')

    def _new_account(self, protected, payload):
        jwk = protected.get(u'jwk')
        if jwk is None:
            return _problem(http.BAD_REQUEST, u'malformed', u'jwk required')
        for location, account in self.accounts.items():
            if account[u'jwk'] == jwk:
                return self._account_response(http.OK, location, account)
        if payload.get(u'onlyReturnExisting'):
            return _problem(
                http.BAD_REQUEST, u'accountDoesNotExist', u'No such account')
        if not payload.get(u'termsOfServiceAgreed'):
            return _problem(
                http.FORBIDDEN, u'userActionRequired',
                u'Agree to the terms of service')
        account_id = len(self.accounts) + 1
        location = u'{}/acct/{}'.format(CA_ROOT, account_id)
        account = self.accounts[location] = {
            u'id': account_id,
            u'jwk': jwk,
            u'contact': payload.get(u'contact', []),
            }
        return self._account_response(http.CREATED, location, account)

    def _account_response(self, code, location, account):
        response = _json_response(
            code,
            {u'status': STATUS_VALID,
             u'id': account[u'id'],
             u'contact': account[u'contact']},
            headers={b'location': location})
        response.headers.setRawHeaders(b'link', [
            u'<{}>;rel="terms-of-service"'.format(
                TERMS_OF_SERVICE_URL).encode('ascii')])
        return response

    def _new_order(self, account, payload):
        domains = [
            identifier[u'value'] for identifier in payload[u'identifiers']]
        for order in self.orders.values():
            if (order.account is account and order.domains == domains and
                    order.status in (STATUS_PENDING, STATUS_READY)):
                return _json_response(
                    http.OK, order.to_json(), headers={b'location': order.url})

        number = next(self._order_counter)
        order_url = u'{}/order/{}'.format(CA_ROOT, number)
        authorizations = []
        for index, domain in enumerate(domains):
            suffix = u'{}-{}'.format(number, index)
            challenge = _FakeChallenge(
                url=u'{}/chall/{}'.format(CA_ROOT, suffix),
                token=u'token-{}'.format(suffix))
            authz = _FakeAuthorization(
                url=u'{}/authz/{}'.format(CA_ROOT, suffix),
                domain=domain,
                challenge=challenge,
                offer_dns01=domain not in self.no_dns01)
            self.challenges[challenge.url] = challenge
            self.authorizations[authz.url] = authz
            authorizations.append(authz)
        order = self.orders[order_url] = _FakeOrder(
            url=order_url,
            account=account,
            domains=domains,
            authorizations=authorizations,
            finalize=order_url + u'/finalize')
        return _json_response(
            http.CREATED, order.to_json(), headers={b'location': order_url})

    def _answer(self, challenge):
        if challenge.status == STATUS_PENDING:
            challenge.status = STATUS_PROCESSING
            challenge.results = list(self.validation_results)
        return _json_response(http.OK, challenge.to_json())

    def _finalize(self, order, payload):
        if order.status != STATUS_READY:
            return _problem(
                http.FORBIDDEN, u'orderNotReady',
                u'Order is {}'.format(order.status))
        try:
            csr = x509.load_der_x509_csr(
                b64url_decode(payload[u'csr']), default_backend())
            names = csr.extensions.get_extension_for_class(
                x509.SubjectAlternativeName).value.get_values_for_type(
                    x509.DNSName)
        except (KeyError, ValueError, x509.ExtensionNotFound):
            return _problem(http.BAD_REQUEST, u'badCSR', u'Unreadable CSR')
        if not csr.is_signature_valid:
            return _problem(
                http.BAD_REQUEST, u'badCSR', u'Bad CSR signature')
        if sorted(names) != sorted(order.domains):
            return _problem(
                http.BAD_REQUEST, u'badCSR', u'CSR names do not match')
        self.csrs.append(csr)
        order.fixed_status = STATUS_PROCESSING
        order.results = list(self.order_results)
        return _json_response(http.OK, order.to_json())

    def _advance_order(self, order):
        status = (
            order.results.pop(0) if len(order.results) > 1
            else order.results[0])
        if status == STATUS_VALID:
            number = order.url.rsplit(u'/', 1)[-1]
            url = self.certificate_url.format(number)
            self.certificates[url] = self.certificate_chain
            order.certificate = url
            order.results = None
        elif status == STATUS_INVALID:
            order.error = {
                u'type': _PROBLEM_NS + u'serverInternal',
                u'detail': u'Issuance failed'}
            order.results = None
        order.fixed_status = status


def _public_key(jwk):
    if jwk.get(u'kty') != u'EC' or jwk.get(u'crv') != u'P-256':
        return None
    try:
        numbers = ec.EllipticCurvePublicNumbers(
            int.from_bytes(b64url_decode(jwk[u'x']), 'big'),
            int.from_bytes(b64url_decode(jwk[u'y']), 'big'),
            ec.SECP256R1())
        return numbers.public_key(default_backend())
    except (KeyError, ValueError, TypeError):
        return None


@implementer(ITXTResolver)
class FakeResolver(object):
    """
    A TXT resolver answering from a dictionary.

    :param dict records: Record name to list of values.
    """
    def __init__(self, records=None):
        self.records = dict(records or {})
        self.failures = {}
        self.lookups = []

    def publish(self, challenges):
        """
        Publish the expected records of ``challenges``.
        """
        for challenge in challenges:
            self.records.setdefault(challenge.record_name, []).append(
                challenge.expected_value)

    def resolve_txt(self, name):
        self.lookups.append(name)
        if name in self.failures:
            return fail(self.failures[name])
        return succeed(list(self.records.get(name, [])))


__all__ = [
    'CA_ROOT', 'DIRECTORY_URL', 'FIXTURE_CHAIN', 'FakeCA', 'FakeResolver',
    'NEW_ACCOUNT_URL', 'NEW_NONCE_URL', 'NEW_ORDER_URL', 'RecordedRequest',
    'TXDNSACMETestCase']
