#
# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# Exceptions
#
from .constants import KNOWN_STATUS_WORDS, SW_WRONG_PIN, SW_WRONG_PIN_MASK

class LedgerError(RuntimeError):
    def __init__(self, msg, code=None):
        self.code = code
        super().__init__(msg)

class EncodingError(LedgerError, ValueError):
    # value can't be put on the wire as given; nothing was sent
    pass

def describe_status(sw):
    if (sw & SW_WRONG_PIN_MASK) == SW_WRONG_PIN:
        return 'Wrong PIN, %d attempts left' % (sw & 0x0f)
    return KNOWN_STATUS_WORDS.get(sw, 'Unknown error')

class UnexpectedStatus(LedgerError):
    # Device answered with a status word we didn't accept. Device-side state
    # is unknown now: restart the whole operation.
    def __init__(self, code, ins=None):
        self.ins = ins
        where = (' on INS 0x%02x' % ins) if ins is not None else ''
        msg = 'Got status 0x%04x%s: %s' % (code, where, describe_status(code))
        super().__init__(msg, code)

class ParentNotFound(LedgerError, LookupError):
    def __init__(self, txid):
        self.txid = txid
        super().__init__(f'Parent transaction {txid} not found')

class UnsupportedConfirmationFlow(LedgerError):
    pass

class VerificationFailed(LedgerError):
    def __init__(self, input_index):
        self.input_index = input_index
        super().__init__(f'Signature for input #{input_index} does not verify')

# EOF
