"""
`~txdnsacme.interfaces.IHTTPTransport` implementation using treq.
"""
import json

import attr
from treq.client import HTTPClient
from twisted.internet import defer, error
from twisted.web.client import (
    Agent, HTTPConnectionPool, ResponseFailed, ResponseNeverReceived)
from twisted.web.http_headers import Headers
from zope.interface import implementer

from txdnsacme import __version__
from txdnsacme.errors import ProtocolError, TransportError
from txdnsacme.interfaces import IHTTPTransport

_DEFAULT_TIMEOUT = 40

#: Failures of the exchange itself; anything else is passed on unchanged.
_TRANSPORT_FAILURES = (
    error.ConnectError,
    error.ConnectingCancelledError,
    error.ConnectionLost,
    error.DNSLookupError,
    error.TimeoutError,
    defer.TimeoutError,
    ResponseFailed,
    ResponseNeverReceived,
    )

JSON_CONTENT_TYPE = b'application/json'
JOSE_CONTENT_TYPE = b'application/jose+json'
JSON_ERROR_CONTENT_TYPE = b'application/problem+json'
PEM_CHAIN_TYPE = b'application/pem-certificate-chain'


@attr.s(frozen=True)
class HTTPResponse(object):
    """
    A complete HTTP response.

    :ivar int code: The status code.
    :ivar headers: The ``twisted.web.http_headers.Headers``.
    :ivar bytes body: The whole body.
    """
    code = attr.ib()
    headers = attr.ib(default=attr.Factory(Headers), repr=False)
    body = attr.ib(default=b'', repr=False)

    def header(self, name):
        """
        Get the first value of a header field as text, or ``None``.
        """
        value = self.headers.getRawHeaders(name, [None])[0]
        if isinstance(value, bytes):
            return value.decode('latin-1')
        return value

    def json(self):
        """
        Decode the body as JSON.

        :raises ProtocolError: If the body is not valid JSON.
        """
        try:
            return json.loads(self.body.decode('utf-8'))
        except ValueError as e:
            raise ProtocolError(
                'Response is not JSON: {}'.format(e), self)


@implementer(IHTTPTransport)
class TreqTransport(object):
    """
    Send requests with a treq ``HTTPClient``.

    :param client: A ``treq.client.HTTPClient`` or anything with the same
        ``request`` method, such as ``treq.testing.StubTreq``.
    :param int timeout: Number of seconds to wait for a response.
    """
    def __init__(self, client, timeout=_DEFAULT_TIMEOUT,
                 user_agent=u'txdnsacme/{}'.format(__version__).encode(
                     'ascii')):
        self._treq = client
        self.timeout = timeout
        self._user_agent = user_agent

    @classmethod
    def from_reactor(cls, reactor, timeout=_DEFAULT_TIMEOUT):
        """
        Make a transport with its own connection pool.
        """
        pool = HTTPConnectionPool(reactor)
        agent = Agent(reactor, pool=pool)
        transport = cls(HTTPClient(agent=agent), timeout=timeout)
        transport._pool = pool
        return transport

    _pool = None

    def send_request(self, method, url, headers=None, body=None):
        if headers is None:
            headers = Headers()
        headers.setRawHeaders(b'user-agent', [self._user_agent])

        def cb_collect(response):
            return response.content().addCallback(
                lambda body: HTTPResponse(
                    code=response.code, headers=response.headers, body=body))

        def eb_transport(failure):
            failure.trap(*_TRANSPORT_FAILURES)
            raise TransportError(url=url, reason=failure.getErrorMessage())

        d = self._treq.request(
            method, url, headers=headers, data=body, timeout=self.timeout)
        d.addCallback(cb_collect)
        d.addErrback(eb_transport)
        return d

    def stop(self):
        """
        Close cached connections.

        :return: A deferred which fires when the connections are closed.
        """
        if self._pool is not None:
            return self._pool.closeCachedConnections()
        return defer.succeed(None)


__all__ = [
    'HTTPResponse', 'JOSE_CONTENT_TYPE', 'JSON_CONTENT_TYPE',
    'JSON_ERROR_CONTENT_TYPE', 'PEM_CHAIN_TYPE', 'TreqTransport']
