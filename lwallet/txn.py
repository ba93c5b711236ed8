#
# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# txn.py
#
# The few pieces of a transaction we need, on top of python-bitcoinlib.
#
import struct
from collections import namedtuple
from bitcoin.core import CMutableTransaction, ValidationError, Hash160, b2lx
from bitcoin.core.script import CScript, OP_DUP, OP_HASH160, OP_EQUALVERIFY, OP_CHECKSIG
from bitcoin.core.scripteval import VerifyScript
from bitcoin.core.scripteval import SCRIPT_VERIFY_P2SH, SCRIPT_VERIFY_STRICTENC
from bitcoin.core.scripteval import SCRIPT_VERIFY_DERSIG, SCRIPT_VERIFY_LOW_S
from .utils import write_varint

# script checks applied to our own signatures
VERIFY_FLAGS = (SCRIPT_VERIFY_P2SH, SCRIPT_VERIFY_STRICTENC,
                    SCRIPT_VERIFY_DERSIG, SCRIPT_VERIFY_LOW_S)

class OutPoint(namedtuple('OutPoint', 'hash n')):
    # Reference to one output of a transaction: txid (internal byte order) + index.
    # - plain tuple, so equality and hashing are by value; use as dict key
    __slots__ = ()

    @classmethod
    def from_prevout(cls, prevout):
        # from bitcoinlib COutPoint or CMutableOutPoint
        return cls(bytes(prevout.hash), prevout.n)

    def serialize(self):
        return self.hash + struct.pack('<I', self.n)

    def __str__(self):
        return '%s:%d' % (b2lx(self.hash), self.n)

class Coin(namedtuple('Coin', 'outpoint txout')):
    # An output we want to spend: where it is and what it holds
    __slots__ = ()

    @classmethod
    def from_parent(cls, parent, index):
        return cls(OutPoint(parent.GetTxid(), index), parent.vout[index])

    @property
    def script_code(self):
        # P2PKH only: script to be hashed in place of the scriptSig
        return self.txout.scriptPubKey

def ser_version(tx):
    return struct.pack('<i', tx.nVersion)

def ser_lock_time(tx):
    return struct.pack('<I', tx.nLockTime)

def ser_sequence(txin):
    return struct.pack('<I', txin.nSequence)

def ser_amount(txout):
    return struct.pack('<q', txout.nValue)

def ser_outputs(outputs):
    # standard encoding of the output vector: count then each CTxOut
    outputs = list(outputs)
    rv = bytearray()
    write_varint(rv, len(outputs))
    for txout in outputs:
        rv.extend(txout.serialize())
    return bytes(rv)

def clone_tx(tx):
    return CMutableTransaction.from_tx(tx)

def p2pkh_script(pubkey):
    return CScript([OP_DUP, OP_HASH160, Hash160(pubkey), OP_EQUALVERIFY, OP_CHECKSIG])

def is_p2pkh(script):
    # exactly: DUP HASH160 <20 bytes> EQUALVERIFY CHECKSIG
    s = bytes(script)
    return len(s) == 25 and s[0:3] == b'\x76\xa9\x14' and s[23:25] == b'\x88\xac'

def p2pkh_script_sig(sig, pubkey):
    # sig includes the trailing sighash byte
    return CScript([sig, pubkey])

def verify_input(script_pubkey, tx, index):
    # run the script interpreter over one input; True if it passes
    # - only legacy P2PKH can be signed; segwit programs would "pass" here
    script_pubkey = CScript(script_pubkey)
    if script_pubkey.is_witness_scriptpubkey() or not is_p2pkh(script_pubkey):
        return False

    try:
        VerifyScript(tx.vin[index].scriptSig, script_pubkey, tx, index, flags=VERIFY_FLAGS)
    except ValidationError:
        return False
    return True

# EOF
