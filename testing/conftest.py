#
# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
import pytest
from bitcoin.core import CMutableTransaction, CMutableTxIn, CMutableTxOut, COutPoint
from bitcoin.core.script import CScript

from lwallet.proto import LedgerClient
from lwallet.transport import LedgerTransportABC
from lwallet.utils import str2path
from lwallet.txn import p2pkh_script

# path used for signing in most tests
TEST_PATH = "m/44h/0h/0h/0/0"

def pytest_addoption(parser):
    parser.addoption("--device", action="store_true",
                     default=False, help="run tests that need a device (or emulator on socket)")

def pytest_configure(config):
    config.addinivalue_line("markers", "device: needs a real device or running emulator")

def pytest_collection_modifyitems(config, items):
    if config.getoption("--device"):
        return
    skip = pytest.mark.skip(reason="need --device option to run")
    for item in items:
        if "device" in item.keywords:
            item.add_marker(skip)

@pytest.fixture(scope='session')
def dev():
    # a connected device (USB or card reader) .. or the emulator on its socket

    from lwallet.transport import find_devices

    for c in find_devices():
        assert isinstance(c, LedgerClient)
        return c
    else:
        raise pytest.skip('no device / emulator found')

@pytest.fixture
def dongle():
    from emulator import SoftDongle
    return SoftDongle()

@pytest.fixture
def emu(dongle):
    # loopback transport, to the soft device, records frames
    from emulator import EmulatorTransport
    return EmulatorTransport(dongle)

@pytest.fixture
def client(emu):
    return LedgerClient(emu)

class ScriptedTransport(LedgerTransportABC):
    # replies with canned responses, in order; remembers what was sent
    name = 'scripted'

    def __init__(self, responses):
        super().__init__()
        self.responses = list(responses)
        self.sent = []

    def _exchange_raw(self, apdu):
        self.sent.append(apdu)
        if not self.responses:
            return b'\x90\x00'
        return self.responses.pop(0)

@pytest.fixture
def scripted():
    # make a client whose device says exactly what we tell it to
    def doit(*responses):
        tr = ScriptedTransport(responses)
        return LedgerClient(tr), tr
    return doit

@pytest.fixture
def our_pubkey(dongle):
    return dongle.pubkey(str2path(TEST_PATH))

@pytest.fixture
def make_parent():
    # a transaction with outputs paying to given scripts, from nowhere in particular
    counter = [0]

    def doit(*outputs):
        counter[0] += 1
        fake_prevout = COutPoint(bytes([counter[0]]) * 32, 0)
        vin = [CMutableTxIn(fake_prevout, CScript([b'\x01' * 72, b'\x02' * 33]), 0xffffffff)]
        vout = [CMutableTxOut(amt, script) for amt, script in outputs]
        return CMutableTransaction(vin, vout)

    return doit

@pytest.fixture
def make_spend():
    # unsigned transaction spending given (parent, index) pairs
    def doit(spends, outputs=None, lock_time=0):
        vin = [CMutableTxIn(COutPoint(parent.GetTxid(), idx), CScript(), 0xfffffffe)
                        for parent, idx in spends]
        if outputs is None:
            outputs = [(10_000, p2pkh_script(b'\x03' * 33))]
        vout = [CMutableTxOut(amt, script) for amt, script in outputs]
        return CMutableTransaction(vin, vout, nLockTime=lock_time)

    return doit

# EOF
