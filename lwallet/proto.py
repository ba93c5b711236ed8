#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# proto.py
#
# Implement the higher-level protocol: wallet commands and transaction signing.
#
#
from typing import Iterator, Tuple
from bitcoin.core import b2lx
from .constants import *
from .exceptions import LedgerError, EncodingError, UnexpectedStatus
from .exceptions import ParentNotFound, UnsupportedConfirmationFlow, VerificationFailed
from .utils import write_uint32_be, write_varint, write_buffer, serialize_path, force_bytes
from .objects import LedgerFirmware, WalletPubKey, TrustedInput
from .txn import OutPoint, clone_tx, p2pkh_script_sig, verify_input
from .txn import ser_version, ser_lock_time, ser_sequence, ser_amount, ser_outputs

# accepted status words, unless caller says otherwise
OK = (SW_OKAY,)

def build_apdu(cla, ins, p1=0, p2=0, data=b''):
    # [cla][ins][p1][p2][len][data]
    if len(data) > MAX_APDU_DATA:
        raise EncodingError(f"APDU payload too long: {len(data)} > {MAX_APDU_DATA}")

    return bytes([cla, ins, p1, p2, len(data)]) + bytes(data)

def split_response(resp) -> Tuple[int, bytes]:
    # [data][sw1][sw2] => (status word, data)
    if len(resp) < 2:
        raise LedgerError("Response too short, no status word")

    return (resp[-2] << 8) | resp[-1], bytes(resp[:-2])

def chunkify(data: bytes, chunk_len: int) -> Iterator[Tuple[bool, bytes]]:
    # yields (is_last, chunk); always at least one chunk, even if empty
    size = len(data)

    if size <= chunk_len:
        yield True, data
        return

    for offset in range(0, size, chunk_len):
        yield (offset + chunk_len >= size), data[offset: offset + chunk_len]

class LedgerClient:
    #
    # Protocol/wrapper for devices. Call methods on this instance to get work done.
    #
    # Every method here holds the transport lock until done, so that commands
    # from other threads can't land in the middle of a multi-APDU sequence.
    #
    def __init__(self, transport):
        self.tr = transport

    def __repr__(self):
        return '<%s via %r>' % (self.__class__.__name__, self.tr)

    def close(self):
        # optional? cleanup connection
        self.tr.close()
        del self.tr

    #
    # APDU level
    #
    def exchange_apdu(self, cla, ins, p1, p2, data=b'', ok=OK) -> bytes:
        # Send one APDU, check status word is acceptable, return response data.
        apdu = build_apdu(cla, ins, p1, p2, data)

        with self.tr.lock():
            resp = self.tr.exchange(apdu)

        sw, resp = split_response(resp)
        if sw not in ok:
            raise UnexpectedStatus(sw, ins)

        return resp

    def exchange_apdu_split(self, cla, ins, p1, p2, data, ok=OK):
        # Send data over as many APDUs as needed. First one gets p1, all
        # the others are marked as continuations. Returns last response (if any).
        resp = None

        with self.tr.lock():
            for offset in range(0, len(data), MAX_APDU_DATA):
                resp = self.exchange_apdu(cla, ins, p1 if not offset else P1_MORE, p2,
                                                data[offset:offset+MAX_APDU_DATA], ok)
        return resp

    def exchange_apdu_split2(self, cla, ins, p1, p2, data, trailer, ok=OK):
        # Same, but glue the trailer onto the end of the last APDU.
        # - sends the trailer alone if no data at all
        block_len = MAX_APDU_DATA - len(trailer)
        offset = 0

        with self.tr.lock():
            while True:
                here = data[offset:offset+block_len]
                last = (offset + len(here)) >= len(data)

                resp = self.exchange_apdu(cla, ins, p1 if not offset else P1_MORE, p2,
                                                bytes(here) + (trailer if last else b''), ok)
                offset += len(here)

                if last:
                    return resp

    #
    # Commands
    #
    def get_firmware_version(self) -> LedgerFirmware:
        with self.tr.lock():
            resp = self.exchange_apdu(LEDGER_CLA, INS_GET_FIRMWARE_VERSION, 0x00, 0x00)

        return LedgerFirmware.parse(resp)

    def verify_pin(self, pin):
        # Unlock device. Wrong PIN shows up as UnexpectedStatus 0x63Cx.
        pin = force_bytes(pin)

        with self.tr.lock():
            self.exchange_apdu(LEDGER_CLA, INS_VERIFY_PIN, 0x00, 0x00, pin)

    def get_wallet_pubkey(self, path) -> WalletPubKey:
        # path can be text (m/44h/0h) or list of numbers
        data = serialize_path(path)

        with self.tr.lock():
            resp = self.exchange_apdu(LEDGER_CLA, INS_GET_WALLET_PUBLIC_KEY, 0x00, 0x00, data)

        return WalletPubKey.parse(resp)

    def get_trusted_input(self, tx, index: int) -> TrustedInput:
        # Replay whole transaction to device; it replies with proof of
        # value for the indicated output.
        if not (0 <= index < len(tx.vout)):
            raise IndexError(f"Output index {index} out of range, tx has {len(tx.vout)} outputs")

        ins = INS_GET_TRUSTED_INPUT

        with self.tr.lock():
            # Header
            data = bytearray()
            write_uint32_be(data, index)
            write_buffer(data, ser_version(tx))
            write_varint(data, len(tx.vin))
            self.exchange_apdu(LEDGER_CLA, ins, P1_FIRST, 0x00, data)

            # Each input
            for txin in tx.vin:
                data = bytearray()
                write_buffer(data, OutPoint.from_prevout(txin.prevout).serialize())
                write_varint(data, len(txin.scriptSig))
                self.exchange_apdu(LEDGER_CLA, ins, P1_MORE, 0x00, data)

                self.exchange_apdu_split2(LEDGER_CLA, ins, P1_MORE, 0x00,
                                                bytes(txin.scriptSig), ser_sequence(txin))

            # Number of outputs
            data = bytearray()
            write_varint(data, len(tx.vout))
            self.exchange_apdu(LEDGER_CLA, ins, P1_MORE, 0x00, data)

            # Each output
            for txout in tx.vout:
                data = bytearray()
                write_buffer(data, ser_amount(txout))
                write_varint(data, len(txout.scriptPubKey))
                self.exchange_apdu(LEDGER_CLA, ins, P1_MORE, 0x00, data)

                self.exchange_apdu_split(LEDGER_CLA, ins, P1_MORE, 0x00, bytes(txout.scriptPubKey))

            # Locktime
            resp = self.exchange_apdu(LEDGER_CLA, ins, P1_MORE, 0x00, ser_lock_time(tx))

        return TrustedInput(resp)

    def untrusted_hash_tx_input_start(self, new_transaction: bool, tx, index: int,
                                                            trusted_inputs=None):
        # Start hashing a transaction on the device, in preparation to sign
        # the input at index. Only that input's scriptSig is sent, the others are
        # hashed as empty. Inputs we have a trusted input for are sent as such.
        known = {ti.outpoint: ti for ti in (trusted_inputs or [])}
        ins = INS_HASH_INPUT_START

        with self.tr.lock():
            data = bytearray()
            write_buffer(data, ser_version(tx))
            write_varint(data, len(tx.vin))
            self.exchange_apdu(LEDGER_CLA, ins, P1_FIRST,
                                P2_NEW_TRANSACTION if new_transaction else P2_CONTINUE_TRANSACTION,
                                data)

            for idx, txin in enumerate(tx.vin):
                prevout = OutPoint.from_prevout(txin.prevout)
                trusted = known.get(prevout)
                script = bytes(txin.scriptSig) if idx == index else b''

                data = bytearray()
                if trusted is not None:
                    blob = trusted.to_bytes()
                    data.append(0x01)
                    data.append(len(blob))
                    write_buffer(data, blob)
                else:
                    data.append(0x00)
                    write_buffer(data, prevout.serialize())
                write_varint(data, len(script))
                self.exchange_apdu(LEDGER_CLA, ins, P1_MORE, 0x00, data)

                data = bytearray()
                write_buffer(data, script)
                write_buffer(data, ser_sequence(txin))
                self.exchange_apdu_split(LEDGER_CLA, ins, P1_MORE, 0x00, data)

    def untrusted_hash_tx_input_finalize_full(self, outputs) -> bytes:
        # Send all the outputs; last APDU is flagged as such.
        # Returns [len][output data][confirmation type]...
        data = ser_outputs(outputs)
        resp = None

        with self.tr.lock():
            for is_last, chunk in chunkify(data, MAX_APDU_DATA):
                resp = self.exchange_apdu(LEDGER_CLA, INS_HASH_INPUT_FINALIZE_FULL,
                                            P1_LAST if is_last else 0x00, 0x00, chunk)

        if not resp:
            raise UnsupportedConfirmationFlow("No response to finalize, unsupported user confirmation method")

        pos = 1 + resp[0]
        if len(resp) > pos and resp[pos] != 0x00:
            # keycard or secure screen validation, which we don't do
            raise UnsupportedConfirmationFlow(f"Unsupported user confirmation method: {resp[pos]}")

        return resp

    def untrusted_hash_sign(self, path, pin=None, lock_time=0, sighash_type=SIGHASH_ALL) -> bytes:
        # Sign what was hashed so far. Returns DER signature + sighash byte.
        pin = force_bytes(pin) if pin else b''
        if len(pin) > 255:
            raise EncodingError("PIN too long")

        data = bytearray(serialize_path(path))
        data.append(len(pin))
        write_buffer(data, pin)
        write_uint32_be(data, lock_time)
        data.append(sighash_type)

        with self.tr.lock():
            resp = bytearray(self.exchange_apdu(LEDGER_CLA, INS_HASH_SIGN, 0x00, 0x00, data))

        if not resp:
            raise LedgerError("Empty signature from device")

        # device doesn't provide the tag (uses that bit for parity of R)
        resp[0] = DER_SEQUENCE_TAG

        return bytes(resp)

    #
    # Wrappers and Helpers
    #
    def sign_transaction(self, path, coins, parents, tx, pin=None, raise_on_error=False):
        """
        Sign every input of tx that spends one of the coins, with the key at path.

        Needs the complete parent transaction for every input (even ones we don't
        sign) so the device can check the values being spent.

        Returns a new, signed transaction; caller's copy is not changed. If any
        signature fails to verify, returns None (or raises VerificationFailed
        if raise_on_error).
        """
        with self.tr.lock():
            pubkey = self.get_wallet_pubkey(path).compressed_public_key

            parents_by_id = {bytes(p.GetTxid()): p for p in parents}
            coins_by_prevout = {c.outpoint: c for c in coins}

            # find all the parents before talking to device about any of them
            todo = []
            for txin in tx.vin:
                prevout = OutPoint.from_prevout(txin.prevout)
                parent = parents_by_id.get(prevout.hash)
                if parent is None:
                    raise ParentNotFound(b2lx(prevout.hash))
                todo.append((parent, prevout.n))

            trusted_inputs = [self.get_trusted_input(parent, n) for parent, n in todo]

            tx = clone_tx(tx)

            # device must hash the script being spent in place of scriptSig
            for txin in tx.vin:
                coin = coins_by_prevout.get(OutPoint.from_prevout(txin.prevout))
                if coin is not None:
                    txin.scriptSig = coin.script_code

            new_transaction = True
            for idx, txin in enumerate(tx.vin):
                coin = coins_by_prevout.get(OutPoint.from_prevout(txin.prevout))
                if coin is None:
                    continue

                self.untrusted_hash_tx_input_start(new_transaction, tx, idx, trusted_inputs)
                new_transaction = False

                self.untrusted_hash_tx_input_finalize_full(tx.vout)

                sig = self.untrusted_hash_sign(path, pin, tx.nLockTime, SIGHASH_ALL)
                txin.scriptSig = p2pkh_script_sig(sig, pubkey)

                if not verify_input(coin.txout.scriptPubKey, tx, idx):
                    # never hand back a half-signed transaction
                    if raise_on_error:
                        raise VerificationFailed(idx)
                    return None

        return tx

# EOF
