from testtools import ExpectedException, TestCase
from testtools.matchers import Equals, HasLength, StartsWith

from txdnsacme import der


class LengthTests(TestCase):
    """
    `~txdnsacme.der.encode_length` uses the short form when it can and the
    long form otherwise.
    """
    def test_short_form(self):
        self.assertThat(der.encode_length(0), Equals(b'\x00'))
        self.assertThat(der.encode_length(127), Equals(b'\x7f'))

    def test_long_form(self):
        """
        128 is the first length that needs the long form.
        """
        self.assertThat(der.encode_length(128), Equals(b'\x81\x80'))
        self.assertThat(der.encode_length(255), Equals(b'\x81\xff'))
        self.assertThat(der.encode_length(256), Equals(b'\x82\x01\x00'))
        self.assertThat(der.encode_length(65536), Equals(b'\x83\x01\x00\x00'))

    def test_negative(self):
        with ExpectedException(ValueError):
            der.encode_length(-1)

    def test_sequence_long_content(self):
        """
        Structures with long content carry a long form length.
        """
        content = der.octet_string(b'x' * 300)
        self.assertThat(content, StartsWith(b'\x04\x82\x01\x2c'))
        encoded = der.sequence(content)
        self.assertThat(encoded, StartsWith(b'\x30\x82\x01\x30'))
        self.assertThat(encoded, HasLength(4 + 304))


class IntegerTests(TestCase):
    """
    `~txdnsacme.der.integer` encodes minimal two's complement.
    """
    def test_zero(self):
        self.assertThat(der.integer(0), Equals(b'\x02\x01\x00'))

    def test_high_bit(self):
        """
        Positive numbers with the high bit set get a leading zero byte.
        """
        self.assertThat(der.integer(127), Equals(b'\x02\x01\x7f'))
        self.assertThat(der.integer(128), Equals(b'\x02\x02\x00\x80'))
        self.assertThat(der.integer(256), Equals(b'\x02\x02\x01\x00'))

    def test_negative(self):
        self.assertThat(der.integer(-1), Equals(b'\x02\x01\xff'))
        self.assertThat(der.integer(-128), Equals(b'\x02\x01\x80'))
        self.assertThat(der.integer(-129), Equals(b'\x02\x02\xff\x7f'))


class ObjectIdentifierTests(TestCase):
    """
    `~txdnsacme.der.object_identifier` encodes dotted OIDs.
    """
    def test_common_name(self):
        self.assertThat(
            der.object_identifier('2.5.4.3'), Equals(b'\x06\x03\x55\x04\x03'))

    def test_multibyte_arcs(self):
        """
        Arcs above 127 are split in base 128 groups.
        """
        self.assertThat(
            der.object_identifier('1.2.840.10045.2.1'),
            Equals(b'\x06\x07\x2a\x86\x48\xce\x3d\x02\x01'))
        self.assertThat(
            der.object_identifier('1.2.840.113549.1.9.14'),
            Equals(b'\x06\x09\x2a\x86\x48\x86\xf7\x0d\x01\x09\x0e'))

    def test_invalid(self):
        with ExpectedException(ValueError):
            der.object_identifier('3.1')
        with ExpectedException(ValueError):
            der.object_identifier('1.40')
        with ExpectedException(ValueError):
            der.object_identifier('1')


class StringTests(TestCase):
    def test_strings(self):
        self.assertThat(der.utf8_string(u'\xe9'), Equals(b'\x0c\x02\xc3\xa9'))
        self.assertThat(der.printable_string(u'NL'), Equals(b'\x13\x02NL'))
        self.assertThat(der.ia5_string(u'a@b'), Equals(b'\x16\x03a@b'))
        self.assertThat(der.octet_string(b'\x01'), Equals(b'\x04\x01\x01'))

    def test_bit_string(self):
        """
        The first content octet counts the unused bits.
        """
        self.assertThat(der.bit_string(b'\xff'), Equals(b'\x03\x02\x00\xff'))


class ConstructedTests(TestCase):
    def test_set_of_sorted(self):
        """
        The members of a SET OF are sorted by their encoding.
        """
        self.assertThat(
            der.set_of(der.integer(2), der.integer(1)),
            Equals(b'\x31\x06\x02\x01\x01\x02\x01\x02'))

    def test_context(self):
        self.assertThat(
            der.context(0, b'\x05\x00'), Equals(b'\xa0\x02\x05\x00'))
        self.assertThat(
            der.context(2, b'abc', constructed=False),
            Equals(b'\x82\x03abc'))

    def test_context_high_tag(self):
        with ExpectedException(ValueError):
            der.context(31, b'')
