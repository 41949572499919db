"""
Utility functions that may prove useful when writing an ACME client.
"""
import json
from functools import wraps

from josepy.b64 import b64decode
from josepy.json_util import encode_b64jose
from twisted.internet.defer import maybeDeferred
from twisted.python.url import URL


def b64url(data):
    """
    Encode ``data`` as unpadded URL-safe base64 text ("safe64").

    :param data: Bytes, or text which is encoded as UTF-8 first.

    :rtype: str
    """
    if isinstance(data, str):
        data = data.encode('utf-8')
    return encode_b64jose(data)


def b64url_decode(data):
    """
    Decode unpadded URL-safe base64 text.

    :rtype: bytes
    """
    return b64decode(data)


def canonical_json(obj):
    """
    Serialize ``obj`` as compact JSON with sorted keys.

    This is the form used for key thumbprints (RFC 7638) and for the JWS
    segments we sign.

    :rtype: bytes
    """
    return json.dumps(
        obj, sort_keys=True, separators=(',', ':')).encode('utf-8')


def tap(f):
    """
    "Tap" a Deferred callback chain with a function whose return value is
    ignored.
    """
    @wraps(f)
    def _cb(res, *a, **kw):
        d = maybeDeferred(f, res, *a, **kw)
        d.addCallback(lambda ignored: res)
        return d
    return _cb


def check_directory_url_type(url):
    """
    Check that ``url`` is a ``twisted.python.url.URL`` instance, raising
    `TypeError` if it isn't.
    """
    if not isinstance(url, URL):
        raise TypeError(
            'ACME directory URL should be a twisted.python.url.URL, '
            'got {!r} instead'.format(url))


__all__ = [
    'b64url', 'b64url_decode', 'canonical_json', 'check_directory_url_type',
    'tap']
