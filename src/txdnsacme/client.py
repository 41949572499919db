"""
ACME v2 client for Twisted, issuing certificates through ``dns-01``
challenges.

Extracted from RFC 8555

   +--------------------+--------------------------------+--------------+
   | Action             | Request                        | Response     |
   +--------------------+--------------------------------+--------------+
   | 1. Get directory   | GET  directory                 | 200          |
   | 2. Get nonce       | HEAD newNonce                  | 200          |
   | 3. Create account  | POST newAccount                | 201 ->       |
   |                    |                                | account      |
   | 4. Submit order    | POST newOrder                  | 201 -> order |
   | 5. Fetch           | GET order's authorization urls | 200          |
   |    challenges      |                                |              |
   | 6. Respond to      | POST authorization challenge   | 200          |
   |    challenges      | urls                           |              |
   | 7. Poll for status | GET challenge                  | 200          |
   | 8. Finalize order  | POST order's finalize url      | 200          |
   | 9. Poll for status | GET order                      | 200          |
   | 10. Download       | GET order's certificate url    | 200          |
   +--------------------+--------------------------------+--------------+

1. client = Client.from_url(reactor, DIRECTORY_URL)
2. done automatically before each signed request
3. account = client.register(account_key) - creates or finds an account.
4-10. result = client.issue(account, [list, of, domains], domain_key);
   until the TXT records are visible ``result`` is a
   `~txdnsacme.messages.DNSPrecheckInconclusive`, to be retried later.
"""
import re

from acme import messages as acme_messages
from eliot.twisted import DeferredContext
from josepy.errors import DeserializationError
from twisted.internet import defer
from twisted.internet.task import deferLater
from twisted.logger import Logger
from twisted.web import http
from twisted.web.http_headers import Headers

from txdnsacme import jws
from txdnsacme.errors import (
    OrderCreationFailed, ProtocolError, RegistrationError, ServerError,
    TransportError, problem_of)
from txdnsacme.issuance import OrderIssuer, PollPolicy
from txdnsacme.logging import (
    LOG_ACME_CONSUME_DIRECTORY,
    LOG_ACME_ISSUE,
    LOG_ACME_REGISTER,
    LOG_HTTP_PARSE_LINKS,
    LOG_JWS_BAD_NONCE,
    LOG_JWS_GET,
    LOG_JWS_GET_NONCE,
    LOG_JWS_HEAD,
    LOG_JWS_POST,
    LOG_JWS_REQUEST,
    LOG_JWS_RETRY,
    LOG_JWS_SIGN,
    )
from txdnsacme.messages import Account, DNSPrecheckInconclusive
from txdnsacme.resolver import NamesTXTResolver
from txdnsacme.transport import (
    _DEFAULT_TIMEOUT, JOSE_CONTENT_TYPE, JSON_CONTENT_TYPE,
    JSON_ERROR_CONTENT_TYPE, PEM_CHAIN_TYPE, TreqTransport)
from txdnsacme.util import check_directory_url_type, tap

REPLAY_NONCE_HEADER = b'Replay-Nonce'

#: Directory entries the issuance flow cannot do without.
REQUIRED_DIRECTORY_ENTRIES = (u'newNonce', u'newAccount', u'newOrder')

log = Logger()


# Borrowed from requests, with modifications.
def _parse_header_links(response):
    """
    Parse the links from a Link: header field.

    ..  todo:: Links with the same relation collide at the moment.

    :param response: The `~txdnsacme.transport.HTTPResponse`.

    :rtype: `dict`
    :return: A dictionary of parsed links, keyed by ``rel`` or ``url``.
    """
    values = response.headers.getRawHeaders(b'link', [b''])
    value = b','.join(values).decode('ascii')
    with LOG_HTTP_PARSE_LINKS(raw_link=value) as action:
        links = {}
        replace_chars = u' \'"'
        for val in re.split(u', *<', value):
            try:
                url, params = val.split(u';', 1)
            except ValueError:
                url, params = val, u''

            link = {}
            link[u'url'] = url.strip(u'<> \'"')
            for param in params.split(u';'):
                try:
                    key, value = param.split(u'=')
                except ValueError:
                    break
                link[key.strip(replace_chars)] = value.strip(replace_chars)
            links[link.get(u'rel') or link.get(u'url')] = link
        action.add_success_fields(parsed_links=links)
        return links


class JWSClient(object):
    """
    HTTP client using JWS-signed messages for ACME.

    There is no nonce pool: every signed request fetches its own nonce right
    before it is signed, and signed requests may run concurrently.

    :param transport: The `~txdnsacme.interfaces.IHTTPTransport` to use.
    :param clock: ``IReactorTime`` provider used for retry backoff.
    :param int retries: How often an idempotent request is retried after a
        `~txdnsacme.errors.TransportError`.
    :param float retry_backoff: Delay in seconds before the first retry;
        doubled for every further one.
    :param bool post_as_get: Read resources with signed POST-as-GET requests
        instead of plain GETs when polling.
    """
    def __init__(self, transport, clock, retries=3, retry_backoff=0.5,
                 post_as_get=False):
        self._transport = transport
        self._clock = clock
        self.retries = retries
        self.retry_backoff = retry_backoff
        self.post_as_get = post_as_get

    def _send_request(self, method, url, headers=None, body=None):
        """
        Send HTTP request.

        :param str method: The HTTP method to use.
        :param str url: The URL to make the request to.

        :return: Deferred firing with the `~txdnsacme.transport.HTTPResponse`.
        """
        action = LOG_JWS_REQUEST(url=url, method=method)
        with action.context():
            return (
                DeferredContext(
                    defer.maybeDeferred(
                        self._transport.send_request,
                        method, url, headers=headers, body=body))
                .addCallback(
                    tap(lambda r: action.add_success_fields(
                        code=r.code,
                        content_type=r.header(b'content-type'))))
                .addActionFinish())

    @defer.inlineCallbacks
    def _send_idempotent(self, method, url, headers=None):
        """
        Send a request without a body, retrying transport failures with
        exponential backoff.
        """
        delay = self.retry_backoff
        attempt = 0
        while True:
            try:
                response = yield self._send_request(
                    method, url, headers=headers)
            except TransportError:
                attempt += 1
                if attempt > self.retries:
                    raise
                LOG_JWS_RETRY(url=url, attempt=attempt, delay=delay).write()
                yield deferLater(self._clock, delay, lambda: None)
                delay *= 2
            else:
                return response

    @classmethod
    def _check_response(cls, response, content_type=JSON_CONTENT_TYPE):
        """
        Check response status and, for JSON responses, the body.

        :raises ~txdnsacme.errors.ServerError: If server response body carries
            an HTTP Problem (RFC 7807).
        :raises ~txdnsacme.errors.ProtocolError: In case of other error
            responses, or a missing or malformed JSON body.

        :return: The response, unmodified.
        """
        response_ct = (response.header(b'content-type') or u'').lower()
        if 400 <= response.code < 600:
            if response_ct.startswith(JSON_ERROR_CONTENT_TYPE.decode()):
                try:
                    problem = acme_messages.Error.from_json(response.json())
                except (ProtocolError, DeserializationError):
                    raise ProtocolError(
                        'Malformed problem document ({})'.format(
                            response.code),
                        response)
                raise ServerError(problem, response)
            raise ProtocolError(
                'Unexpected error response: {}'.format(response.code),
                response)
        if content_type == JSON_CONTENT_TYPE:
            response.json()
        return response

    def head(self, url):
        """
        Send HEAD request without checking the response.

        :param str url: The URL to make the request to.
        """
        with LOG_JWS_HEAD().context():
            return DeferredContext(
                self._send_idempotent(u'HEAD', url)).addActionFinish()

    def get(self, url, content_type=JSON_CONTENT_TYPE):
        """
        Send an unauthenticated GET request and check the response.

        :param str url: The URL to make the request to.
        :param bytes content_type: The expected content type; the body is
            only decoded as JSON when this is JSON.

        :raises txdnsacme.errors.ServerError: If server response body carries
            an HTTP Problem.
        :raises txdnsacme.errors.ProtocolError: In case of other protocol
            errors.

        :return: Deferred firing with the checked HTTP response.
        """
        headers = Headers({b'accept': [content_type]})
        with LOG_JWS_GET().context():
            return (
                DeferredContext(
                    self._send_idempotent(u'GET', url, headers=headers))
                .addCallback(self._check_response, content_type=content_type)
                .addActionFinish())

    def fetch_directory(self, url):
        """
        Fetch the ACME directory.

        :param str url: The directory URL.

        :rtype: Deferred[`acme.messages.Directory`]
        """
        def cb_parse(response):
            jobj = response.json()
            if not isinstance(jobj, dict):
                raise ProtocolError('Directory is not a JSON object', response)
            missing = [
                name for name in REQUIRED_DIRECTORY_ENTRIES
                if name not in jobj]
            if missing:
                raise ProtocolError(
                    'Directory has no {} URL'.format(', '.join(missing)),
                    response)
            action.add_success_fields(
                directory={k: v for k, v in jobj.items() if k != u'meta'})
            return acme_messages.Directory.from_json(jobj)

        action = LOG_ACME_CONSUME_DIRECTORY(url=url)
        with action.context():
            return (
                DeferredContext(self.get(url))
                .addCallback(cb_parse)
                .addActionFinish())

    def fetch_nonce(self, url):
        """
        Get a fresh anti-replay nonce.

        :param str url: The ``newNonce`` URL of the directory.

        :raises txdnsacme.errors.ProtocolError: If the response carries no
            ``Replay-Nonce`` header.

        :rtype: Deferred[str]
        """
        def cb_extract_nonce(response):
            nonce = response.header(REPLAY_NONCE_HEADER)
            if not nonce:
                raise ProtocolError(
                    'Missing {} header'.format(REPLAY_NONCE_HEADER.decode()),
                    response)
            action.add_success_fields(nonce=nonce)
            return nonce

        action = LOG_JWS_GET_NONCE(url=url)
        with action.context():
            return (
                DeferredContext(self.head(url))
                .addCallback(cb_extract_nonce)
                .addActionFinish())

    def _wrap_in_jws(self, nonce, url, payload, key, kid):
        """
        Sign ``payload`` for ``url``.

        :rtype: bytes
        :return: JSON-encoded data
        """
        header = jws.protected_header(
            url, nonce, key=key if kid is None else None, kid=kid)
        with LOG_JWS_SIGN(url=url, kid=kid, alg=header[u'alg']):
            return jws.build(header, payload, key).json_dumps()

    def _post(self, url, payload, key, nonce_url, kid=None,
              content_type=JSON_CONTENT_TYPE):
        headers = Headers({
            b'content-type': [JOSE_CONTENT_TYPE],
            b'accept': [content_type],
            })
        with LOG_JWS_POST().context():
            return (
                DeferredContext(self.fetch_nonce(nonce_url))
                .addCallback(self._wrap_in_jws, url, payload, key, kid)
                .addCallback(
                    lambda data: self._send_request(
                        u'POST', url, headers=headers, body=data))
                .addCallback(self._check_response, content_type=content_type)
                .addActionFinish())

    def post(self, url, payload, key, nonce_url, kid=None,
             content_type=JSON_CONTENT_TYPE):
        """
        POST a signed payload and check the response.  Retry once, with a new
        nonce, if a badNonce error is received.

        :param str url: The URL to request.
        :param payload: The JSON payload, or ``None`` for POST-as-GET.
        :param ~txdnsacme.keys.ECKeyPair key: The account key.
        :param str nonce_url: The ``newNonce`` URL.
        :param str kid: The account URL, or ``None`` to embed the public key
            (only for account creation).
        :param bytes content_type: The expected content type of the response.

        :raises txdnsacme.errors.ServerError: If server response body carries
            an HTTP Problem.
        :raises txdnsacme.errors.ProtocolError: In case of other protocol
            errors.
        """
        def retry_bad_nonce(f):
            f.trap(ServerError)
            # The current RFC defines the namespace as
            # urn:ietf:params:acme:error:<code>, but earlier drafts (and some
            # current implementations) use urn:acme:error:<code> instead. We
            # don't really care about the namespace here, just the error code.
            if f.value.problem.typ.split(':')[-1] == 'badNonce':
                LOG_JWS_BAD_NONCE(url=url).write()
                return self._post(
                    url, payload, key, nonce_url, kid=kid,
                    content_type=content_type)
            return f
        return (
            self._post(
                url, payload, key, nonce_url, kid=kid,
                content_type=content_type)
            .addErrback(retry_bad_nonce))

    def poll_get(self, url, key, nonce_url, kid,
                 content_type=JSON_CONTENT_TYPE):
        """
        Read an ACME resource that is being polled.

        This is a plain GET, or a signed POST-as-GET (empty payload) when the
        client was configured with ``post_as_get``.
        """
        if self.post_as_get:
            return self.post(
                url, None, key, nonce_url, kid=kid, content_type=content_type)
        return self.get(url, content_type=content_type)


class Client(object):
    """
    ACME client interface.

    The directory is fetched again for every `register` and `issue` call, so a
    long lived client follows changes of the server's endpoints.

    Should be initialized with 'Client.from_url'.

    :param str url: The directory URL.
    :param JWSClient jws_client: The request layer.
    :param resolver: The `~txdnsacme.interfaces.ITXTResolver` used for the DNS
        precheck.
    :param clock: ``IReactorTime`` provider used for polling.
    :param ~txdnsacme.csr.Subject subject: Extra subject fields for CSRs.
    :param ~txdnsacme.issuance.PollPolicy poll_policy: How challenges and
        orders are polled.
    """
    def __init__(self, url, jws_client, resolver, clock, subject=None,
                 poll_policy=None, transport=None):
        if poll_policy is None:
            poll_policy = PollPolicy()
        self.url = url
        self._client = jws_client
        self._resolver = resolver
        self._clock = clock
        self._subject = subject
        self._poll_policy = poll_policy
        self._transport = transport

    @classmethod
    def from_url(
        cls, reactor, url, transport=None, resolver=None,
        timeout=_DEFAULT_TIMEOUT, retries=3, retry_backoff=0.5,
        poll_interval=5.0, max_attempts=60, poll_timeout=None,
        post_as_get=False, subject=None,
            ):
        """
        Construct a client for the ACME directory at a given URL.

        :param reactor: The Twisted reactor to use.
        :param url: The ``twisted.python.url.URL`` of the directory.  See
            `txdnsacme.urls` for constants for various well-known public
            directories.
        :param transport: The `~txdnsacme.interfaces.IHTTPTransport` to use,
            or ``None`` to use treq.
        :param resolver: The `~txdnsacme.interfaces.ITXTResolver` to use, or
            ``None`` to use the system resolver through ``twisted.names``.
        :param int timeout: Number of seconds to wait for an HTTP response
            during ACME server interaction.
        :param int retries: How often idempotent requests are retried.
        :param float retry_backoff: The first retry delay, in seconds.
        :param float poll_interval: Seconds between two polls of a challenge
            or order.
        :param int max_attempts: How often a resource is polled before giving
            up.
        :param float poll_timeout: Give up polling after this many seconds;
            ``None`` for no limit besides ``max_attempts``.
        :param bool post_as_get: Poll with signed POST-as-GET requests.
        :param ~txdnsacme.csr.Subject subject: Extra subject fields for CSRs.

        :return: The constructed client.
        :rtype: `Client`
        """
        check_directory_url_type(url)
        if transport is None:
            transport = TreqTransport.from_reactor(reactor, timeout=timeout)
        if resolver is None:
            resolver = NamesTXTResolver()
        jws_client = JWSClient(
            transport, reactor, retries=retries, retry_backoff=retry_backoff,
            post_as_get=post_as_get)
        poll_policy = PollPolicy(
            interval=poll_interval, max_attempts=max_attempts,
            timeout=poll_timeout)
        return cls(
            url.asText(), jws_client, resolver, reactor, subject=subject,
            poll_policy=poll_policy, transport=transport)

    def directory(self):
        """
        Fetch the current directory.

        :rtype: Deferred[`acme.messages.Directory`]
        """
        return self._client.fetch_directory(self.url)

    def register(self, account_key, email=None, only_return_existing=False):
        """
        Create a new account with the ACME server, or find the existing one
        for ``account_key``.

        :param ~txdnsacme.keys.ECKeyPair account_key: The account key.
        :param str email: Comma separated contact emails used by the account.
        :param bool only_return_existing: Do not create an account; fail if
            there is none for this key.

        :raises ~txdnsacme.errors.RegistrationError: If the server refused or
            answered with something we cannot use.

        :rtype: Deferred[`~txdnsacme.messages.Account`]
        """
        contact = []
        if email:
            contact = [
                u'mailto:' + address.strip()
                for address in email.split(u',') if address.strip()]
        payload = {
            u'termsOfServiceAgreed': True,
            u'onlyReturnExisting': only_return_existing,
            }
        if contact:
            payload[u'contact'] = contact

        action = LOG_ACME_REGISTER(
            contact=contact, only_return_existing=only_return_existing)
        with action.context():
            return (
                DeferredContext(self._register(account_key, payload))
                .addCallback(
                    tap(lambda a: action.add_success_fields(
                        location=a.location)))
                .addActionFinish())

    @defer.inlineCallbacks
    def _register(self, account_key, payload):
        try:
            directory = yield self.directory()
            response = yield self._client.post(
                directory.newAccount, payload, account_key,
                directory.newNonce)
        except (ServerError, ProtocolError, TransportError) as error:
            raise RegistrationError(
                'Account registration failed: {}'.format(error),
                problem=problem_of(error)) from error

        if response.code not in (http.OK, http.CREATED):
            raise RegistrationError(
                'Expected 200 or 201 but got {!r}'.format(response.code))
        location = response.header(b'location')
        if location is None:
            raise RegistrationError('Account response has no Location')
        body = response.json()
        if not isinstance(body, dict):
            raise RegistrationError('Account response is not a JSON object')

        links = _parse_header_links(response)
        terms_of_service = None
        if u'terms-of-service' in links:
            terms_of_service = links[u'terms-of-service'][u'url']
        return Account(
            location=location,
            account_id=body.get(u'id'),
            key=account_key,
            terms_of_service=terms_of_service)

    def issue(self, account, domains, domain_key):
        """
        Run one issuance pass for ``domains``.

        The TXT records for every ``dns-01`` challenge must already be
        published; when any of them is not visible yet, nothing is submitted
        and a `~txdnsacme.messages.DNSPrecheckInconclusive` is returned, with
        the expected records in its order's challenges.  Run the pass again
        once they are visible.

        The returned deferred can be cancelled to abort the attempt.

        :param ~txdnsacme.messages.Account account: The account to use.
        :param list domains: The DNS names for the certificate.
        :param ~txdnsacme.keys.ECKeyPair domain_key: The certificate key.

        :raises ~txdnsacme.errors.IssuanceError: A subclass naming the step
            that failed.
        :raises ~txdnsacme.errors.ValidationTimeout: If the server did not
            settle within the poll policy.

        :rtype: Deferred[`~txdnsacme.messages.Order` or
            `~txdnsacme.messages.DNSPrecheckInconclusive`]
        :return: The order in state ``CERT_ISSUED``, with the PEM chain as
            its ``certificate``, or the not-ready-yet result.
        """
        domains = list(domains)

        def cb_issue(directory):
            issuer = OrderIssuer(
                client=self._client,
                directory=directory,
                account=account,
                resolver=self._resolver,
                clock=self._clock,
                subject=self._subject,
                poll_policy=self._poll_policy)
            return issuer.issue(domains, domain_key)

        def cb_log_state(result):
            if isinstance(result, DNSPrecheckInconclusive):
                log.info(
                    'TXT records not visible yet for {domains!r}.',
                    domains=[c.domain for c in result.pending])
                state = result.order.state
            else:
                state = result.state
            action.add_success_fields(state=state)
            return result

        action = LOG_ACME_ISSUE(domains=domains)
        with action.context():
            return (
                DeferredContext(
                    self.directory().addErrback(
                        self._eb_directory_for_issue))
                .addCallback(cb_issue)
                .addCallback(cb_log_state)
                .addActionFinish())

    @staticmethod
    def _eb_directory_for_issue(failure):
        failure.trap(ServerError, ProtocolError, TransportError)
        raise OrderCreationFailed(
            'Could not fetch the directory: {}'.format(failure.value),
            problem=problem_of(failure.value))

    def stop(self):
        """
        Stops the client operation, closing cached connections.

        :return: When operation is done.
        :rtype: Deferred[None]
        """
        if self._transport is not None and hasattr(self._transport, 'stop'):
            return self._transport.stop()
        return defer.succeed(None)


__all__ = [
    'Client', 'JWSClient', 'JSON_CONTENT_TYPE', 'JSON_ERROR_CONTENT_TYPE',
    'JOSE_CONTENT_TYPE', 'PEM_CHAIN_TYPE', 'REPLAY_NONCE_HEADER']
