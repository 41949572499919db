"""
ACME resources as seen by the client.

Everything here is an immutable snapshot; the issuance steps hand new
snapshots to each other (``attr.evolve``) instead of updating shared objects.

..  seealso:: RFC 8555, section 7.1
"""
import attr

STATUS_PENDING = u'pending'
STATUS_READY = u'ready'
STATUS_PROCESSING = u'processing'
STATUS_VALID = u'valid'
STATUS_INVALID = u'invalid'

#: Client-side challenge status: the TXT record is visible, but the server
#: has not been told yet.
STATUS_CHALLENGE_READY = u'challenge-ready'

ORDER_CREATED = u'ORDER_CREATED'
AUTHORIZATIONS_FETCHED = u'AUTHORIZATIONS_FETCHED'
DNS_PRECHECK = u'DNS_PRECHECK'
PENDING_EXTERNAL = u'PENDING_EXTERNAL'
CHALLENGES_SUBMITTED = u'CHALLENGES_SUBMITTED'
VALIDATING = u'VALIDATING'
FINALIZING = u'FINALIZING'
CERT_ISSUED = u'CERT_ISSUED'

IDENTIFIER_DNS = u'dns'
CHALLENGE_DNS01 = u'dns-01'

#: Label prepended to the domain to get the ``dns-01`` record name.
DNS01_LABEL = u'_acme-challenge'


def fqdn_identifier(fqdn):
    """
    Construct an identifier from an FQDN.

    Trivial implementation, just saves on typing.

    :param str fqdn: The domain name.

    :rtype: dict
    """
    return {u'type': IDENTIFIER_DNS, u'value': fqdn}


@attr.s(frozen=True)
class Account(object):
    """
    A registered ACME account.

    :ivar str location: The account URL; the ``kid`` of every later request.
    :ivar account_id: The ``id`` the server reported, if any.
    :ivar ~txdnsacme.keys.ECKeyPair key: The account key.
    :ivar str terms_of_service: The terms of service URL, when the server
        linked one.
    """
    location = attr.ib()
    account_id = attr.ib()
    key = attr.ib(repr=False)
    terms_of_service = attr.ib(default=None)


@attr.s(frozen=True)
class Challenge(object):
    """
    The ``dns-01`` challenge of one authorization.

    :ivar str domain: The requested name; wildcards keep their ``*.`` prefix.
    :ivar str record_name: Where the TXT record has to be published.
    :ivar str expected_value: The TXT record value the server will look for.
    :ivar str status: The server status, or `STATUS_CHALLENGE_READY`.
    :ivar str url: The challenge URL, used to answer and to poll.
    :ivar error: The server's problem document for a failed challenge.
    """
    domain = attr.ib()
    record_name = attr.ib()
    expected_value = attr.ib()
    status = attr.ib()
    url = attr.ib()
    token = attr.ib(repr=False)
    authorization_url = attr.ib(default=None, repr=False)
    error = attr.ib(default=None)


@attr.s(frozen=True)
class Order(object):
    """
    One attempt to get a certificate for a set of names.

    :ivar str location: The order URL.
    :ivar str finalize: The URL to send the CSR to.
    :ivar str status: The server status of the order.
    :ivar identifiers: The requested DNS names.
    :ivar authorizations: The authorization URLs.
    :ivar challenges: One `Challenge` per authorization, in the same order.
    :ivar str state: Where in the issuance process the order is.
    :ivar str certificate_url: Where the certificate can be downloaded, once
        the order is valid.
    :ivar bytes certificate: The downloaded PEM chain.
    """
    location = attr.ib()
    finalize = attr.ib()
    status = attr.ib()
    identifiers = attr.ib(converter=tuple)
    authorizations = attr.ib(converter=tuple, default=())
    challenges = attr.ib(converter=tuple, default=())
    state = attr.ib(default=ORDER_CREATED)
    certificate_url = attr.ib(default=None)
    certificate = attr.ib(default=None, repr=False)

    def with_challenges(self, updated):
        """
        Merge updated challenges back in, matching them by URL.

        Challenges not in ``updated`` are kept as they are, and the original
        ordering is preserved.
        """
        by_url = {challenge.url: challenge for challenge in updated}
        return attr.evolve(
            self,
            challenges=[by_url.get(c.url, c) for c in self.challenges])

    def challenges_with_status(self, *statuses):
        return [c for c in self.challenges if c.status in statuses]


@attr.s(frozen=True)
class DNSPrecheckInconclusive(object):
    """
    The result of an issuance pass that stopped because not every challenge
    record was visible yet.  Not an error: publish the records (or wait for
    them to propagate) and run the pass again.

    :ivar Order order: The order snapshot, in state `PENDING_EXTERNAL`.
    """
    order = attr.ib()

    @property
    def pending(self):
        """
        The challenges whose TXT record is not visible yet.
        """
        return self.order.challenges_with_status(STATUS_PENDING)


__all__ = [
    'Account', 'Challenge', 'DNSPrecheckInconclusive', 'Order',
    'fqdn_identifier']
