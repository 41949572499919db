"""
Minimal DER (X.690) encoder.

Only the handful of universal types a PKCS#10 request needs are covered.  Every
function returns the complete TLV encoding as ``bytes``, so structures are
built by nesting calls.
"""

TAG_INTEGER = 0x02
TAG_BIT_STRING = 0x03
TAG_OCTET_STRING = 0x04
TAG_OBJECT_IDENTIFIER = 0x06
TAG_UTF8_STRING = 0x0c
TAG_PRINTABLE_STRING = 0x13
TAG_IA5_STRING = 0x16
TAG_SEQUENCE = 0x30
TAG_SET = 0x31


def encode_length(length):
    """
    Encode a content length.

    Lengths below 128 use the one byte short form; anything longer uses the
    long form, a count byte with the high bit set followed by the big-endian
    length.
    """
    if length < 0:
        raise ValueError('Negative length: {}'.format(length))
    if length < 0x80:
        return bytes([length])
    octets = length.to_bytes((length.bit_length() + 7) // 8, 'big')
    if len(octets) > 0x7e:
        raise ValueError('Length too large: {}'.format(length))
    return bytes([0x80 | len(octets)]) + octets


def tlv(tag, content):
    return bytes([tag]) + encode_length(len(content)) + content


def sequence(*items):
    return tlv(TAG_SEQUENCE, b''.join(items))


def set_of(*items):
    """
    Encode a SET OF; DER requires the encoded members in ascending order.
    """
    return tlv(TAG_SET, b''.join(sorted(items)))


def context(number, content, constructed=True):
    """
    Encode an IMPLICIT context-specific tag around ``content``.

    :param int number: The tag number, ``[number]``.
    :param bytes content: The already encoded content octets.
    """
    if number > 30:
        raise ValueError('High tag numbers are not supported')
    tag = 0x80 | number
    if constructed:
        tag |= 0x20
    return tlv(tag, content)


def integer(value):
    """
    Encode an INTEGER in minimal two's complement form.
    """
    if value < 0:
        length = (value + 1).bit_length() // 8 + 1
    else:
        length = value.bit_length() // 8 + 1
    return tlv(TAG_INTEGER, value.to_bytes(length, 'big', signed=True))


def object_identifier(dotted):
    """
    Encode an OBJECT IDENTIFIER given in dotted decimal notation.
    """
    arcs = [int(arc) for arc in dotted.split('.')]
    if len(arcs) < 2 or arcs[0] > 2 or (arcs[0] < 2 and arcs[1] > 39):
        raise ValueError('Invalid object identifier: {}'.format(dotted))
    body = bytearray()
    for arc in [40 * arcs[0] + arcs[1]] + arcs[2:]:
        chunk = [arc & 0x7f]
        arc >>= 7
        while arc:
            chunk.append(0x80 | (arc & 0x7f))
            arc >>= 7
        body.extend(reversed(chunk))
    return tlv(TAG_OBJECT_IDENTIFIER, bytes(body))


def bit_string(data, unused_bits=0):
    return tlv(TAG_BIT_STRING, bytes([unused_bits]) + data)


def octet_string(data):
    return tlv(TAG_OCTET_STRING, data)


def utf8_string(text):
    return tlv(TAG_UTF8_STRING, text.encode('utf-8'))


def printable_string(text):
    return tlv(TAG_PRINTABLE_STRING, text.encode('ascii'))


def ia5_string(text):
    return tlv(TAG_IA5_STRING, text.encode('ascii'))


__all__ = [
    'bit_string', 'context', 'encode_length', 'ia5_string', 'integer',
    'object_identifier', 'octet_string', 'printable_string', 'sequence',
    'set_of', 'tlv', 'utf8_string']
