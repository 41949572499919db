"""
An example getting a certificate with ``dns-01`` challenges.

Each time it starts, it generates a new account key unless ``account.pem``
exists, and a new certificate key unless ``domain.pem`` exists.  The TXT
records to publish are printed; once they are in the zone, press Enter and
the pass is run again.

Example usage:

$ python docs/client_example.py example.com,*.example.com

The Let's Encrypt staging directory is used unless another one is given as
the second argument.
"""
import os
import sys

from eliot import to_file
from twisted.internet import defer, task, threads
from twisted.python.url import URL

from txdnsacme.client import Client
from txdnsacme.keys import ECKeyPair
from txdnsacme.messages import DNSPrecheckInconclusive
from txdnsacme.urls import LETSENCRYPT_STAGING_DIRECTORY

LOG_PATH = 'eliot-log.json'


def _load_or_generate(path):
    """
    Return the key stored at ``path``, generating and storing one if there is
    none yet.
    """
    if os.path.exists(path):
        with open(path, 'rb') as stream:
            return ECKeyPair.from_pem(stream.read())
    key = ECKeyPair.generate()
    with open(path, 'wb') as stream:
        stream.write(key.to_private_pem())
    print('New key generated in %s' % (path,))
    return key


@defer.inlineCallbacks
def main(reactor, domains, directory=LETSENCRYPT_STAGING_DIRECTORY):
    to_file(open(LOG_PATH, 'a'))
    client = Client.from_url(reactor, directory)
    try:
        account = yield client.register(_load_or_generate('account.pem'))
        print('Account URI: %s' % (account.location,))
        domain_key = _load_or_generate('domain.pem')

        while True:
            result = yield client.issue(account, domains, domain_key)
            if not isinstance(result, DNSPrecheckInconclusive):
                break
            print('Publish these TXT records:')
            for challenge in result.pending:
                print('  %s  TXT  "%s"' % (
                    challenge.record_name, challenge.expected_value))
            yield threads.deferToThread(
                input, 'Press Enter once they are visible... ')

        with open('certificate.pem', 'wb') as stream:
            stream.write(result.certificate)
        print('Certificate saved to certificate.pem')
    finally:
        yield client.stop()


if __name__ == '__main__':
    if len(sys.argv) < 2:
        print('Usage: %s DOMAIN[,DOMAIN...] [DIRECTORY_URL]' % (sys.argv[0],))
        sys.exit(1)
    arguments = [sys.argv[1].split(',')]
    if len(sys.argv) > 2:
        arguments.append(URL.fromText(sys.argv[2]))
    task.react(main, arguments)
