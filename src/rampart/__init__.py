"""
Rampart - resilience control layer.

Classifies faults, retries them under named policies, short-circuits failing
dependencies, parks work for later replay and contains whatever still
escapes.

- rampart.core: errors, classifier, redaction, storage, settings, logging
- rampart.execution: retry, circuit breaker, deferred queue, boundaries, capture
- rampart.cli: ``rampart`` command line
"""

__version__ = "0.1.0"

from rampart.core import *  # noqa
from rampart.execution import *  # noqa
