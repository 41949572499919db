"""
Eliot message and action definitions.
"""
from eliot import ActionType, Field, MessageType, fields

NONCE = Field.for_types(u'nonce', [str], u'A nonce value')

URL = Field.for_types(u'url', [str], u'The URL of an ACME resource')

STATUS = Field.for_types(
    u'status', [str, None], u'The status of an ACME resource')

DOMAINS = Field(
    u'domains', list, u'The DNS names a certificate is requested for')

LOG_JWS_SIGN = ActionType(
    u'txdnsacme:jws:sign',
    fields(URL,
           Field.for_types(u'kid', [str, None], u'The account URL'),
           alg=str),
    fields(),
    u'Signing a message with JWS')

LOG_JWS_HEAD = ActionType(
    u'txdnsacme:jws:http:head',
    fields(),
    fields(),
    u'A JWSClient HEAD request')

LOG_JWS_GET = ActionType(
    u'txdnsacme:jws:http:get',
    fields(),
    fields(),
    u'A JWSClient GET request')

LOG_JWS_POST = ActionType(
    u'txdnsacme:jws:http:post',
    fields(),
    fields(),
    u'A JWSClient POST request')

LOG_JWS_REQUEST = ActionType(
    u'txdnsacme:jws:http:request',
    fields(URL, method=str),
    fields(Field.for_types(u'content_type',
                           [str, None],
                           u'Content-Type header field'),
           code=int),
    u'A JWSClient request')

LOG_JWS_RETRY = MessageType(
    u'txdnsacme:jws:http:retry',
    fields(URL, attempt=int, delay=float),
    u'Retrying a failed idempotent request')

LOG_JWS_BAD_NONCE = MessageType(
    u'txdnsacme:jws:nonce:bad',
    fields(URL),
    u'The server rejected our nonce; signing again with a new one')

LOG_JWS_GET_NONCE = ActionType(
    u'txdnsacme:jws:nonce:get',
    fields(URL),
    fields(NONCE),
    u'Fetching a fresh nonce')

LOG_HTTP_PARSE_LINKS = ActionType(
    u'txdnsacme:http:parse-links',
    fields(raw_link=str),
    fields(parsed_links=dict),
    u'Parsing HTTP Links')

LOG_ACME_CONSUME_DIRECTORY = ActionType(
    u'txdnsacme:acme:client:from-url',
    fields(URL),
    fields(Field(u'directory', dict, u'An ACME directory')),
    u'Fetching an ACME directory')

LOG_ACME_REGISTER = ActionType(
    u'txdnsacme:acme:client:registration:create',
    fields(Field(u'contact', list, u'The account contact URIs'),
           only_return_existing=bool),
    fields(Field.for_types(u'location', [str], u'The account URL')),
    u'Registering with an ACME server')

LOG_ACME_ISSUE = ActionType(
    u'txdnsacme:acme:client:issue',
    fields(DOMAINS),
    fields(Field.for_types(u'state', [str], u'The final order state')),
    u'Running one issuance pass for an order')

LOG_ACME_CREATE_ORDER = ActionType(
    u'txdnsacme:acme:order:create',
    fields(DOMAINS),
    fields(URL, STATUS),
    u'Creating an order')

LOG_ACME_ORDER_STATE = MessageType(
    u'txdnsacme:acme:order:state',
    fields(URL, state=str),
    u'An order moved to a new issuance state')

LOG_ACME_FETCH_AUTHORIZATION = ActionType(
    u'txdnsacme:acme:authorization:fetch',
    fields(URL),
    fields(STATUS, domain=str),
    u'Fetching an authorization')

LOG_DNS_PRECHECK = ActionType(
    u'txdnsacme:dns:precheck',
    fields(record_name=str, expected=str),
    fields(STATUS, Field(u'records', list, u'The TXT records found')),
    u'Checking that a challenge TXT record is visible')

LOG_ACME_ANSWER_CHALLENGE = ActionType(
    u'txdnsacme:acme:challenge:answer',
    fields(URL, domain=str),
    fields(STATUS),
    u'Telling the server a challenge is ready to be validated')

LOG_ACME_POLL = ActionType(
    u'txdnsacme:acme:poll',
    fields(URL),
    fields(STATUS, attempts=int),
    u'Polling an ACME resource until it settles')

LOG_ACME_FINALIZE_ORDER = ActionType(
    u'txdnsacme:acme:order:finalize',
    fields(URL),
    fields(STATUS),
    u'Finalizing an order')

LOG_ACME_FETCH_CERTIFICATE = ActionType(
    u'txdnsacme:acme:certificate:fetch',
    fields(URL),
    fields(certificates=int),
    u'Downloading an issued certificate')
