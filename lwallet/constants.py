#
# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# System constants.
#

# APDU class byte for all wallet commands
LEDGER_CLA = 0xE0

# instruction codes we use
INS_VERIFY_PIN = 0x22
INS_GET_WALLET_PUBLIC_KEY = 0x40
INS_GET_TRUSTED_INPUT = 0x42
INS_HASH_INPUT_START = 0x44
INS_HASH_SIGN = 0x48
INS_HASH_INPUT_FINALIZE_FULL = 0x4A
INS_GET_FIRMWARE_VERSION = 0xC4

# P1 values
# - "more" marks a frame that continues an already-open multi-frame command
# - "last" marks the final frame of the finalize-full output stream
P1_FIRST = 0x00
P1_MORE = 0x80
P1_LAST = 0x80

# P2 values for hash-input-start header: reset device accumulator, or keep it
P2_NEW_TRANSACTION = 0x00
P2_CONTINUE_TRANSACTION = 0x80

# Correct APDU response from all commands: 90 00
SW_OKAY = 0x9000

# Human text for status words we know about
KNOWN_STATUS_WORDS = {
    0x6700: 'Incorrect length',
    0x6982: 'Security status not satisfied (PIN needed?)',
    0x6985: 'Conditions of use not satisfied (refused by user?)',
    0x6A80: 'Invalid data',
    0x6A82: 'File not found',
    0x6B00: 'Incorrect parameter P1 or P2',
    0x6D00: 'Instruction not supported',
    0x6E00: 'Class not supported',
    0x6F00: 'Technical problem',
    0x6FAA: 'Device is locked',
}

# wrong PIN: 63 Cx, where x is number of attempts left
SW_WRONG_PIN_MASK = 0xFFF0
SW_WRONG_PIN = 0x63C0

# largest payload in one APDU (length is a single byte)
MAX_APDU_DATA = 255

# deepest derivation path we can encode (count is a single byte)
MAX_PATH_DEPTH = 255

# sig-hash type, we only sign everything
SIGHASH_ALL = 0x01

# devices omit the DER sequence tag in signatures, we put it back
DER_SEQUENCE_TAG = 0x30

# first byte of a trusted input blob, and its minimum length
# - magic(1) zero(1) random(2) txid(32) index(4) amount(8) ... mac(8)
TRUSTED_INPUT_MAGIC = 0x32
TRUSTED_INPUT_MIN_LENGTH = 48

# firmware version response is exactly this long; top bits of features reserved
FIRMWARE_VERSION_LENGTH = 7
FIRMWARE_RESERVED_BITS = 0xC0

# USB details for HID-connected dongles
# - None means "any product id"
LEDGER_USB_IDS = {
    0x2581: [ 0x1b7c, 0x2b7c, 0x3b7c, 0x4b7c ],    # HW.1 and early Nano
    0x2c97: None,                                   # newer products
}
HID_PACKET_SIZE = 64
HID_CHANNEL = 0x0101
HID_TAG_APDU = 0x05
HID_TIMEOUT_MS = 60_000

# emulator listens on this Unix socket, override with LWALLET_EMULATOR env var
DEFAULT_EMULATOR_PIPE = '/tmp/lwallet-emu'

# EOF
