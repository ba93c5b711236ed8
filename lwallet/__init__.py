#
# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
__version__ = '0.1.0'

__all__ = [ 'proto', 'exceptions', 'transport', 'constants', 'utils', 'objects', 'txn' ]

# find connected devices
from lwallet.transport import find_devices, find_first

# base class for working with devices, wants a transport
from lwallet.proto import LedgerClient
