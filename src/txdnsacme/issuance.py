"""
One issuance pass of an ACME order, answered with ``dns-01`` challenges.

The pass moves an `~txdnsacme.messages.Order` snapshot through these states::

    ORDER_CREATED
         |
    AUTHORIZATIONS_FETCHED
         |
    DNS_PRECHECK ---- record not visible ----> PENDING_EXTERNAL
         |                                     (run the pass again later)
    CHALLENGES_SUBMITTED
         |
    VALIDATING ------ challenge invalid -----> ChallengeValidationFailed
         |
    FINALIZING ------ order invalid ---------> FinalizationFailed
         |
    CERT_ISSUED

Requests that do not depend on each other (authorizations, TXT lookups,
challenge answers and polls) run concurrently; the first failure cancels the
rest of its group.
"""
import hashlib

import attr
import pem
from eliot.twisted import DeferredContext
from twisted.internet import defer
from twisted.internet.task import deferLater
from twisted.logger import Logger, LogLevel
from twisted.web import http

from txdnsacme.errors import (
    AuthorizationFetchFailed,
    CertificateDownloadFailed,
    ChallengeValidationFailed,
    FinalizationFailed,
    OrderCreationFailed,
    ProtocolError,
    ServerError,
    TransportError,
    ValidationTimeout,
    problem_of,
    )
from txdnsacme.logging import (
    LOG_ACME_ANSWER_CHALLENGE,
    LOG_ACME_CREATE_ORDER,
    LOG_ACME_FETCH_AUTHORIZATION,
    LOG_ACME_FETCH_CERTIFICATE,
    LOG_ACME_FINALIZE_ORDER,
    LOG_ACME_ORDER_STATE,
    LOG_ACME_POLL,
    LOG_DNS_PRECHECK,
    )
from txdnsacme.messages import (
    AUTHORIZATIONS_FETCHED,
    CERT_ISSUED,
    CHALLENGE_DNS01,
    CHALLENGES_SUBMITTED,
    DNS01_LABEL,
    DNS_PRECHECK,
    FINALIZING,
    IDENTIFIER_DNS,
    PENDING_EXTERNAL,
    STATUS_CHALLENGE_READY,
    STATUS_INVALID,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_VALID,
    VALIDATING,
    Challenge,
    DNSPrecheckInconclusive,
    Order,
    fqdn_identifier,
    )
from txdnsacme.transport import JSON_CONTENT_TYPE, PEM_CHAIN_TYPE
from txdnsacme.util import b64url, tap

log = Logger()

#: Failures of a single request, which each step reports as its own error.
_REQUEST_ERRORS = (ServerError, ProtocolError, TransportError)


def dns01_validation(token, thumbprint):
    """
    Compute the TXT record value for a ``dns-01`` challenge.

    :param str token: The challenge token.
    :param str thumbprint: The account key thumbprint.

    :rtype: str
    """
    key_authorization = u'{}.{}'.format(token, thumbprint)
    return b64url(hashlib.sha256(key_authorization.encode('utf-8')).digest())


def challenge_from_authorization(body, url, thumbprint):
    """
    Pick the ``dns-01`` challenge out of an authorization.

    Wildcard authorizations carry the base domain as their identifier; the
    challenge keeps the ``*.`` prefix in its ``domain`` but the record lives
    under the base domain.

    :param dict body: The authorization object.
    :param str url: The authorization URL.
    :param str thumbprint: The account key thumbprint.

    :raises ~txdnsacme.errors.AuthorizationFetchFailed: If the authorization
        is malformed or offers no ``dns-01`` challenge.

    :rtype: `~txdnsacme.messages.Challenge`
    """
    if not isinstance(body, dict):
        raise AuthorizationFetchFailed(
            'Authorization {} is not a JSON object'.format(url))
    identifier = body.get(u'identifier') or {}
    name = identifier.get(u'value')
    if identifier.get(u'type') != IDENTIFIER_DNS or not name:
        raise AuthorizationFetchFailed(
            'Authorization {} has no DNS identifier'.format(url))

    for challenge in body.get(u'challenges') or []:
        if challenge.get(u'type') == CHALLENGE_DNS01:
            break
    else:
        raise AuthorizationFetchFailed(
            'Authorization for {} offers no {} challenge'.format(
                name, CHALLENGE_DNS01))
    if not challenge.get(u'url') or not challenge.get(u'token'):
        raise AuthorizationFetchFailed(
            'The {} challenge for {} has no url or token'.format(
                CHALLENGE_DNS01, name))

    base = name[2:] if name.startswith(u'*.') else name
    domain = u'*.' + base if body.get(u'wildcard') else name

    status = challenge.get(u'status', STATUS_PENDING)
    if body.get(u'status') in (STATUS_VALID, STATUS_INVALID):
        status = body[u'status']

    return Challenge(
        domain=domain,
        record_name=u'{}.{}'.format(DNS01_LABEL, base),
        expected_value=dns01_validation(challenge[u'token'], thumbprint),
        status=status,
        url=challenge[u'url'],
        token=challenge[u'token'],
        authorization_url=url,
        error=challenge.get(u'error'))


@attr.s(frozen=True)
class PollPolicy(object):
    """
    How pending challenges and orders are polled.

    :ivar float interval: Seconds to wait before every poll.
    :ivar int max_attempts: Give up after this many polls.
    :ivar float timeout: Give up after this many seconds, or ``None``.
    """
    interval = attr.ib(default=5.0)
    max_attempts = attr.ib(default=60)
    timeout = attr.ib(default=None)


def _gather(deferreds):
    """
    Like ``gatherResults``, but the first failure cancels the other
    deferreds and is passed on as it is, not wrapped in a ``FirstError``.
    """
    deferreds = list(deferreds)

    def eb_first_error(failure):
        failure.trap(defer.FirstError)
        for d in deferreds:
            d.cancel()
        return failure.value.subFailure

    d = defer.gatherResults(deferreds, consumeErrors=True)
    d.addErrback(eb_first_error)
    return d


def _json_object(response):
    body = response.json()
    if not isinstance(body, dict):
        raise ProtocolError('Response is not a JSON object', response)
    return body


def _is_final(body):
    return body.get(u'status') in (STATUS_VALID, STATUS_INVALID)


def _order_is_final(body):
    status = body.get(u'status')
    if status == STATUS_VALID:
        return bool(body.get(u'certificate'))
    return status == STATUS_INVALID


@defer.inlineCallbacks
def _poll(clock, policy, url, fetch, is_final, action):
    started = clock.seconds()
    attempts = 0
    status = None
    while True:
        if attempts >= policy.max_attempts:
            raise ValidationTimeout(url=url, status=status, attempts=attempts)
        yield deferLater(clock, policy.interval, lambda: None)
        if (policy.timeout is not None and
                clock.seconds() - started > policy.timeout):
            raise ValidationTimeout(url=url, status=status, attempts=attempts)
        body = yield fetch()
        attempts += 1
        status = body.get(u'status')
        if is_final(body):
            action.add_success_fields(status=status, attempts=attempts)
            return body


def poll_until_final(clock, policy, url, fetch, is_final=_is_final):
    """
    Poll an ACME resource until it settles.

    Every poll is preceded by a wait of ``policy.interval`` seconds.

    :param clock: The ``IReactorTime`` implementation to use; usually the
        reactor, when not testing.
    :param PollPolicy policy: The poll interval and limits.
    :param str url: The polled resource, for logging and errors.
    :param fetch: A callable returning a deferred with the resource body.
    :param is_final: A predicate on the body telling if polling is done;
        by default, when the status is ``valid`` or ``invalid``.

    :raises ~txdnsacme.errors.ValidationTimeout: If the limits of ``policy``
        are reached first.

    :return: A deferred firing with the last body fetched.
    """
    action = LOG_ACME_POLL(url=url)
    with action.context():
        return (
            DeferredContext(_poll(clock, policy, url, fetch, is_final, action))
            .addActionFinish())


def _wrap_request_errors(error_type, message):
    """
    Make an errback reporting request failures as ``error_type``.
    """
    def eb_wrap(failure):
        failure.trap(*_REQUEST_ERRORS)
        raise error_type(
            '{}: {}'.format(message, failure.value),
            problem=problem_of(failure.value))
    return eb_wrap


class OrderIssuer(object):
    """
    Run issuance passes for one account against one directory.

    :param client: The `~txdnsacme.client.JWSClient` to send requests with.
    :param directory: The current `acme.messages.Directory`.
    :param ~txdnsacme.messages.Account account: The account orders are made
        for.
    :param resolver: The `~txdnsacme.interfaces.ITXTResolver` for the
        precheck.
    :param clock: The ``IReactorTime`` implementation to use for polling.
    :param ~txdnsacme.csr.Subject subject: Extra subject fields for the CSR.
    :param PollPolicy poll_policy: How to poll challenges and orders.
    """
    def __init__(self, client, directory, account, resolver, clock,
                 subject=None, poll_policy=None):
        if poll_policy is None:
            poll_policy = PollPolicy()
        self._client = client
        self._directory = directory
        self._account = account
        self._resolver = resolver
        self._clock = clock
        self._subject = subject
        self._poll_policy = poll_policy

    def _post(self, url, payload, content_type=JSON_CONTENT_TYPE):
        return self._client.post(
            url, payload, self._account.key, self._directory.newNonce,
            kid=self._account.location, content_type=content_type)

    def _read(self, url, content_type=JSON_CONTENT_TYPE):
        return self._client.poll_get(
            url, self._account.key, self._directory.newNonce,
            self._account.location, content_type=content_type)

    def _poll(self, url, is_final=_is_final):
        return poll_until_final(
            self._clock, self._poll_policy, url,
            lambda: self._read(url).addCallback(_json_object),
            is_final)

    @staticmethod
    def _set_state(order, state):
        LOG_ACME_ORDER_STATE(url=order.location, state=state).write()
        return attr.evolve(order, state=state)

    @defer.inlineCallbacks
    def issue(self, domains, domain_key):
        """
        Run one pass, from creating the order to downloading the certificate.

        :param list domains: The DNS names for the certificate.
        :param ~txdnsacme.keys.ECKeyPair domain_key: The certificate key.

        :return: A deferred firing with the issued
            `~txdnsacme.messages.Order`, or with a
            `~txdnsacme.messages.DNSPrecheckInconclusive` if some TXT
            records are not visible yet.
        """
        order = yield self.create_order(domains)
        order = yield self.fetch_authorizations(order)
        order = yield self.precheck(order)
        checked = self.gate(order)
        if isinstance(checked, DNSPrecheckInconclusive):
            return checked
        order = yield self.submit(checked)
        order = yield self.validate(order)
        order = yield self.finalize(order, domain_key)
        order = yield self.download(order)
        return order

    def create_order(self, domains):
        """
        Create a new order for ``domains``.

        :raises ValueError: If ``domains`` is empty or has duplicates.
        :raises ~txdnsacme.errors.OrderCreationFailed: If the server does not
            give us a usable order.

        :rtype: Deferred[`~txdnsacme.messages.Order`]
        """
        domains = list(domains)
        if not domains:
            raise ValueError('At least one domain is required')
        if len(set(domains)) != len(domains):
            raise ValueError('Duplicate domains in {!r}'.format(domains))

        action = LOG_ACME_CREATE_ORDER(domains=domains)
        with action.context():
            return (
                DeferredContext(self._create_order(domains))
                .addCallback(
                    tap(lambda order: action.add_success_fields(
                        url=order.location, status=order.status)))
                .addActionFinish())

    @defer.inlineCallbacks
    def _create_order(self, domains):
        payload = {
            u'identifiers': [fqdn_identifier(domain) for domain in domains]}
        try:
            response = yield self._post(self._directory.newOrder, payload)
            body = _json_object(response)
        except _REQUEST_ERRORS as error:
            raise OrderCreationFailed(
                'Order creation failed: {}'.format(error),
                problem=problem_of(error)) from error

        if response.code not in (http.CREATED, http.OK):
            raise OrderCreationFailed(
                'Expected 201 or 200 but got {!r}'.format(response.code))
        location = response.header(b'location')
        if location is None:
            raise OrderCreationFailed('Order response has no Location')
        if not body.get(u'finalize') or not body.get(u'authorizations'):
            raise OrderCreationFailed(
                'Order {} has no finalize URL or authorizations'.format(
                    location))
        if body.get(u'status') == STATUS_INVALID:
            raise OrderCreationFailed(
                'Order {} is invalid'.format(location),
                problem=body.get(u'error'))

        return Order(
            location=location,
            finalize=body[u'finalize'],
            status=body.get(u'status', STATUS_PENDING),
            identifiers=domains,
            authorizations=body[u'authorizations'],
            certificate_url=body.get(u'certificate'))

    def fetch_authorizations(self, order):
        """
        Fetch every authorization of ``order`` and pick its ``dns-01``
        challenge.

        :raises ~txdnsacme.errors.AuthorizationFetchFailed: If any of them
            cannot be fetched or used.

        :rtype: Deferred[`~txdnsacme.messages.Order`]
        """
        thumbprint = self._account.key.thumbprint()
        d = _gather(
            self._fetch_authorization(url, thumbprint)
            for url in order.authorizations)
        d.addCallback(
            lambda challenges: self._set_state(
                attr.evolve(order, challenges=challenges),
                AUTHORIZATIONS_FETCHED))
        return d

    def _fetch_authorization(self, url, thumbprint):
        action = LOG_ACME_FETCH_AUTHORIZATION(url=url)
        with action.context():
            return (
                DeferredContext(self._read(url))
                .addCallback(
                    lambda response: challenge_from_authorization(
                        _json_object(response), url, thumbprint))
                .addErrback(
                    _wrap_request_errors(
                        AuthorizationFetchFailed,
                        'Could not fetch authorization {}'.format(url)))
                .addCallback(
                    tap(lambda challenge: action.add_success_fields(
                        status=challenge.status, domain=challenge.domain)))
                .addActionFinish())

    def precheck(self, order):
        """
        Look up the TXT record of every ``pending`` challenge, once.

        Challenges whose record holds the expected value become
        ``challenge-ready``; the others stay ``pending``, including those
        whose lookup failed.

        :rtype: Deferred[`~txdnsacme.messages.Order`]
        """
        order = self._set_state(order, DNS_PRECHECK)
        d = _gather(
            self._precheck(challenge)
            for challenge in order.challenges_with_status(STATUS_PENDING))
        d.addCallback(order.with_challenges)
        return d

    def _precheck(self, challenge):
        action = LOG_DNS_PRECHECK(
            record_name=challenge.record_name,
            expected=challenge.expected_value)

        def eb_lookup_failed(failure):
            if failure.check(defer.CancelledError):
                return failure
            log.failure(
                'TXT lookup of {record_name} failed',
                failure, LogLevel.warn, record_name=challenge.record_name)
            return []

        def cb_match(records):
            records = list(records)
            if challenge.expected_value in records:
                checked = attr.evolve(challenge, status=STATUS_CHALLENGE_READY)
            else:
                checked = challenge
            action.add_success_fields(status=checked.status, records=records)
            return checked

        with action.context():
            return (
                DeferredContext(
                    defer.maybeDeferred(
                        self._resolver.resolve_txt, challenge.record_name))
                .addErrback(eb_lookup_failed)
                .addCallback(cb_match)
                .addActionFinish())

    def gate(self, order):
        """
        Decide whether the pass can go on after the precheck.

        :raises ~txdnsacme.errors.ChallengeValidationFailed: If the server
            already considers a challenge invalid.

        :return: ``order``, or a `~txdnsacme.messages.DNSPrecheckInconclusive`
            if any challenge is still ``pending``.
        """
        invalid = order.challenges_with_status(STATUS_INVALID)
        if invalid:
            raise ChallengeValidationFailed(
                'Challenge for {} is invalid'.format(invalid[0].domain),
                problem=invalid[0].error)
        if order.challenges_with_status(STATUS_PENDING):
            return DNSPrecheckInconclusive(
                self._set_state(order, PENDING_EXTERNAL))
        return order

    def submit(self, order):
        """
        Tell the server that the ``challenge-ready`` challenges can be
        validated.

        Challenges already ``valid`` or ``processing`` are left alone.

        :rtype: Deferred[`~txdnsacme.messages.Order`]
        """
        d = _gather(
            self._answer_challenge(challenge)
            for challenge in order.challenges_with_status(
                STATUS_CHALLENGE_READY))
        d.addCallback(
            lambda answered: self._set_state(
                order.with_challenges(answered), CHALLENGES_SUBMITTED))
        return d

    def _answer_challenge(self, challenge):
        action = LOG_ACME_ANSWER_CHALLENGE(
            url=challenge.url, domain=challenge.domain)

        def cb_status(response):
            body = _json_object(response)
            status = body.get(u'status', STATUS_PROCESSING)
            if status == STATUS_INVALID:
                raise ChallengeValidationFailed(
                    'Challenge for {} is invalid'.format(challenge.domain),
                    problem=body.get(u'error'))
            action.add_success_fields(status=status)
            return attr.evolve(challenge, status=status)

        with action.context():
            return (
                DeferredContext(self._post(challenge.url, {}))
                .addCallback(cb_status)
                .addErrback(
                    _wrap_request_errors(
                        ChallengeValidationFailed,
                        'Could not answer the challenge for {}'.format(
                            challenge.domain)))
                .addActionFinish())

    def validate(self, order):
        """
        Poll every challenge that is not ``valid`` yet until it is.

        :raises ~txdnsacme.errors.ChallengeValidationFailed: If a challenge
            becomes invalid.
        :raises ~txdnsacme.errors.ValidationTimeout: If a challenge takes too
            long.

        :rtype: Deferred[`~txdnsacme.messages.Order`]
        """
        order = self._set_state(order, VALIDATING)
        d = _gather(
            self._wait_for_challenge(challenge)
            for challenge in order.challenges
            if challenge.status != STATUS_VALID)
        d.addCallback(order.with_challenges)
        return d

    def _wait_for_challenge(self, challenge):
        def cb_check(body):
            if body[u'status'] == STATUS_INVALID:
                raise ChallengeValidationFailed(
                    'Challenge for {} is invalid'.format(challenge.domain),
                    problem=body.get(u'error'))
            return attr.evolve(challenge, status=STATUS_VALID, error=None)

        d = self._poll(challenge.url)
        d.addErrback(
            _wrap_request_errors(
                ChallengeValidationFailed,
                'Could not check the challenge for {}'.format(
                    challenge.domain)))
        d.addCallback(cb_check)
        return d

    def finalize(self, order, domain_key):
        """
        Send the CSR and wait for the certificate to be issued.

        An order that is already ``valid`` with a certificate is not
        finalized again.

        :raises ~txdnsacme.errors.FinalizationFailed: If the order becomes
            invalid or the server refuses the CSR.
        :raises ~txdnsacme.errors.ValidationTimeout: If the order takes too
            long.

        :rtype: Deferred[`~txdnsacme.messages.Order`]
        """
        order = self._set_state(order, FINALIZING)
        if order.status == STATUS_VALID and order.certificate_url:
            return defer.succeed(order)
        action = LOG_ACME_FINALIZE_ORDER(url=order.finalize)
        with action.context():
            return (
                DeferredContext(self._finalize(order, domain_key))
                .addCallback(
                    tap(lambda o: action.add_success_fields(status=o.status)))
                .addActionFinish())

    @defer.inlineCallbacks
    def _finalize(self, order, domain_key):
        csr = domain_key.to_csr(order.identifiers, subject=self._subject)
        try:
            response = yield self._post(order.finalize, {u'csr': csr})
            body = _json_object(response)
            if not _order_is_final(body):
                body = yield self._poll(order.location, _order_is_final)
        except _REQUEST_ERRORS as error:
            raise FinalizationFailed(
                'Could not finalize order {}: {}'.format(
                    order.location, error),
                problem=problem_of(error)) from error

        if body[u'status'] == STATUS_INVALID:
            raise FinalizationFailed(
                'Order {} is invalid'.format(order.location),
                problem=body.get(u'error'))
        return attr.evolve(
            order, status=STATUS_VALID, certificate_url=body[u'certificate'])

    def download(self, order):
        """
        Download the certificate chain of a ``valid`` order.

        :raises ~txdnsacme.errors.CertificateDownloadFailed: If the response
            does not hold any PEM certificate.

        :rtype: Deferred[`~txdnsacme.messages.Order`]
        """
        action = LOG_ACME_FETCH_CERTIFICATE(url=order.certificate_url)
        with action.context():
            return (
                DeferredContext(self._download(order, action))
                .addActionFinish())

    @defer.inlineCallbacks
    def _download(self, order, action):
        try:
            response = yield self._read(
                order.certificate_url, content_type=PEM_CHAIN_TYPE)
        except _REQUEST_ERRORS as error:
            raise CertificateDownloadFailed(
                'Could not download {}: {}'.format(
                    order.certificate_url, error),
                problem=problem_of(error)) from error

        if response.code != http.OK:
            raise CertificateDownloadFailed(
                'Expected 200 but got {!r}'.format(response.code))
        certificates = [
            obj for obj in pem.parse(response.body)
            if isinstance(obj, pem.Certificate)]
        if not certificates:
            raise CertificateDownloadFailed(
                'No certificate found at {}'.format(order.certificate_url))
        action.add_success_fields(certificates=len(certificates))
        return self._set_state(
            attr.evolve(order, certificate=response.body), CERT_ISSUED)


__all__ = [
    'OrderIssuer', 'PollPolicy', 'challenge_from_authorization',
    'dns01_validation', 'poll_until_final']
