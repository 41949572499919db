# -*- coding: utf-8 -*-
"""
Interface definitions for txdnsacme.
"""
from zope.interface import Interface


class IHTTPTransport(Interface):
    """
    A generic HTTPS request primitive.

    The ACME client only ever talks to the server through this; it does not
    care how connections are made.
    """
    def send_request(method, url, headers=None, body=None):
        """
        Perform one HTTP exchange.

        :param str method: The HTTP method, e.g. ``u'POST'``.
        :param str url: The absolute URL to request.
        :param headers: A ``twisted.web.http_headers.Headers`` or ``None``.
        :param bytes body: The request body, or ``None``.

        :raises txdnsacme.errors.TransportError: If no response could be
            obtained, e.g. on connection or TLS failures.

        :rtype: ``Deferred[txdnsacme.transport.HTTPResponse]``
        """


class ITXTResolver(Interface):
    """
    Read-only DNS TXT lookups, used to check that a ``dns-01`` record is
    visible before asking the ACME server to validate it.

    Publishing the record is not the business of this library.
    """
    def resolve_txt(name):
        """
        Look up the TXT records at ``name``.

        :param str name: The fully qualified record name.

        :return: A deferred firing with the list of TXT values (each one
            joined from its character strings), or failing if the lookup
            could not be completed.
        :rtype: ``Deferred[List[str]]``
        """


__all__ = ['IHTTPTransport', 'ITXTResolver']
