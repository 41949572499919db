from os import getenv

import eliot.twisted
from hypothesis import HealthCheck, settings


eliot.twisted.redirectLogsForTrial()
del eliot

# Key generation and CSR signing make single examples slow on CI machines.
settings.register_profile("default", settings(deadline=None))
settings.register_profile(
    "coverage",
    settings(
        max_examples=20,
        deadline=None,
        suppress_health_check=[HealthCheck.too_slow]))
settings.register_profile("thorough", settings(max_examples=500))
settings.load_profile(getenv(u'TXDNSACME_HYPOTHESIS_PROFILE', 'default'))
del HealthCheck, getenv, settings
