#
# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# objects.py
#
# Value objects decoded from device responses.
#
import enum
from collections import namedtuple
from coincurve import PublicKey
from .constants import *
from .exceptions import LedgerError
from .txn import OutPoint
from .utils import B2A

class FirmwareFeatures(enum.IntFlag):
    NONE = 0x00
    COMPRESSED = 0x01
    SECURE_ELEMENT_UI = 0x02
    EXTERNAL_UI = 0x04
    NFC = 0x08
    BLE = 0x10
    TRUSTED_ENVIRONMENT_EXECUTION = 0x20

class LedgerFirmware(namedtuple('LedgerFirmware',
                    'features architecture major minor patch loader_minor loader_major')):
    __slots__ = ()

    @classmethod
    def parse(cls, resp):
        if len(resp) < FIRMWARE_VERSION_LENGTH:
            raise ValueError(f"Firmware version too short: {len(resp)} bytes")

        features = FirmwareFeatures(resp[0] & ~FIRMWARE_RESERVED_BITS)

        return cls(features, *resp[1:FIRMWARE_VERSION_LENGTH])

    @property
    def version(self):
        return (self.major, self.minor, self.patch)

    def __str__(self):
        return ('Ledger ' if self.architecture else '') + \
                '%d.%d.%d (Loader : %d.%d)' % (self.major, self.minor, self.patch,
                                                self.loader_major, self.loader_minor)

class WalletPubKey(namedtuple('WalletPubKey', 'public_key address chain_code')):
    __slots__ = ()

    @classmethod
    def parse(cls, resp):
        # [len][pubkey][len][address (ascii)][chain code (32)]
        try:
            pos = 0
            ln = resp[pos]
            pubkey = bytes(resp[pos+1:pos+1+ln])
            pos += 1 + ln

            ln = resp[pos]
            addr = bytes(resp[pos+1:pos+1+ln]).decode('ascii')
            pos += 1 + ln

            chain_code = bytes(resp[pos:pos+32])
        except IndexError:
            raise LedgerError("Truncated public key response")

        if len(chain_code) != 32:
            raise LedgerError("Truncated public key response")

        return cls(pubkey, addr, chain_code)

    @property
    def compressed_public_key(self):
        return PublicKey(self.public_key).format(compressed=True)

class TrustedInput:
    #
    # Device-issued proof that an outpoint has some value. We never build or
    # change these, just hand them back to the device verbatim.
    #
    def __init__(self, raw):
        raw = bytes(raw)
        if len(raw) < TRUSTED_INPUT_MIN_LENGTH or raw[0] != TRUSTED_INPUT_MAGIC:
            raise LedgerError("Malformed trusted input from device")
        self._raw = raw

    def __repr__(self):
        return '<TrustedInput %s>' % self.outpoint

    def __eq__(self, other):
        return isinstance(other, TrustedInput) and other._raw == self._raw

    def __hash__(self):
        return hash(self._raw)

    def __len__(self):
        return len(self._raw)

    def to_bytes(self):
        return self._raw

    def hex(self):
        return B2A(self._raw)

    @property
    def outpoint(self):
        return OutPoint(self._raw[4:36], int.from_bytes(self._raw[36:40], 'little'))

    @property
    def amount(self):
        return int.from_bytes(self._raw[40:48], 'little')

# EOF
