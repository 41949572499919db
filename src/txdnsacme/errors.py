"""
Exception types for txdnsacme.
"""
import attr


@attr.s(auto_exc=True, str=False)
class InvalidKeyMaterial(ValueError):
    """
    The supplied key components do not form a valid P-256 key pair.
    """
    reason = attr.ib()

    def __str__(self):
        return self.reason


@attr.s(auto_exc=True, str=False)
class TransportError(Exception):
    """
    The HTTP exchange itself failed (connection, TLS or timeout).
    """
    url = attr.ib()
    reason = attr.ib()

    def __str__(self):
        return 'Request to {0.url} failed: {0.reason}'.format(self)


@attr.s(auto_exc=True, str=False)
class ProtocolError(Exception):
    """
    The server response was malformed or not what the protocol requires.
    """
    message = attr.ib()
    response = attr.ib(default=None, repr=False)

    def __str__(self):
        return self.message


class ServerError(Exception):
    """
    :exc:`acme.messages.Error` isn't usable as an asynchronous exception,
    because it doesn't allow setting the ``__traceback__`` attribute like
    Twisted wants to do when cleaning Failures.  This type exists to wrap such
    an error, as well as provide access to the original response.
    """
    def __init__(self, problem, response):
        Exception.__init__(self, problem, response)
        self.problem = problem
        self.response = response

    def __repr__(self):
        return 'ServerError({!r})'.format(self.problem)

    def __str__(self):
        return str(self.problem)


@attr.s(auto_exc=True, str=False)
class IssuanceError(Exception):
    """
    Base class for failures of one step of the account or order flow.

    :ivar str message: What went wrong.
    :ivar problem: The server's problem document, when there was one; either
        an `acme.messages.Error` or the raw ``error`` object of an ACME
        challenge or order.
    """
    message = attr.ib()
    problem = attr.ib(default=None)

    def __str__(self):
        if self.problem is None:
            return self.message
        return '{}: {}'.format(self.message, _describe(self.problem))


class RegistrationError(IssuanceError):
    """
    The account could not be registered.
    """


class OrderCreationFailed(IssuanceError):
    """
    The new order was refused or its response could not be understood.
    """


class AuthorizationFetchFailed(IssuanceError):
    """
    An authorization of the order could not be fetched or has no ``dns-01``
    challenge.
    """


class ChallengeValidationFailed(IssuanceError):
    """
    The server rejected a challenge.
    """


class FinalizationFailed(IssuanceError):
    """
    The order could not be finalized.
    """


class CertificateDownloadFailed(IssuanceError):
    """
    The issued certificate could not be downloaded.
    """


@attr.s(auto_exc=True, str=False)
class ValidationTimeout(Exception):
    """
    A polled resource did not reach the wanted status in time.
    """
    url = attr.ib()
    status = attr.ib()
    attempts = attr.ib()

    def __str__(self):
        return '{0.url} still {0.status!r} after {0.attempts} polls'.format(
            self)


def problem_of(error):
    """
    Get the server's problem document out of a request error, if it has one.
    """
    if isinstance(error, ServerError):
        return error.problem
    return None


def _describe(problem):
    if isinstance(problem, dict):
        return '{} :: {}'.format(problem.get('type'), problem.get('detail'))
    return str(problem)


__all__ = [
    'AuthorizationFetchFailed', 'CertificateDownloadFailed',
    'ChallengeValidationFailed', 'FinalizationFailed', 'InvalidKeyMaterial',
    'IssuanceError', 'OrderCreationFailed', 'ProtocolError',
    'RegistrationError', 'ServerError', 'TransportError', 'ValidationTimeout',
    'problem_of']
