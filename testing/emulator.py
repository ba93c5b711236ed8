#!/usr/bin/env python3
#
# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# Emulate a Ledger-style Bitcoin wallet device, enough to sign legacy P2PKH inputs.
#
# Run it on a Unix socket, and the lwallet library/CLI will find it:
#
#   python testing/emulator.py emulate
#
# Tests use SoftDongle in-process, via EmulatorTransport.
#
import os, struct, threading, hmac, click, base58
from binascii import b2a_hex
from hashlib import sha256
from bitcoin.core import Hash160
from coincurve import PrivateKey
from coincurve.ecdsa import deserialize_compact, cdata_to_der

from lwallet.transport import LedgerTransportABC

# show bytes as hex in a string
B2A = lambda x: b2a_hex(x).decode('ascii')

# single-shot SHA256, and bitcoin's double version
sha256s = lambda msg: sha256(msg).digest()
sha256d = lambda msg: sha256(sha256(msg).digest()).digest()

# Print more?
DEBUG = False

DEFAULT_SEED = b'lwallet emulator'

# what we report as firmware: features + reserved bits, arch, 1.4.3, loader 1.0
FIRMWARE_VERSION = bytes([0xC0 | 0x01, 0x01, 0x01, 0x04, 0x03, 0x00, 0x01])

# command names, by INS byte
COMMANDS = {
    0x22: 'verify_pin',
    0x40: 'get_wallet_pubkey',
    0x42: 'get_trusted_input',
    0x44: 'hash_input_start',
    0x48: 'hash_sign',
    0x4A: 'hash_input_finalize_full',
    0xC4: 'get_firmware_version',
}

# provides status word to send back
class SWError(RuntimeError):
    def __init__(self, sw, msg=''):
        self.sw = sw
        super().__init__(msg or 'SW=0x%04x' % sw)

class NeedMore(Exception):
    # stream parse ran out of data: wait for next frame
    pass

class Reader:
    # pull bitcoin-style values out of a byte stream
    def __init__(self, buf):
        self.buf = bytes(buf)
        self.pos = 0

    def take(self, n):
        if self.pos + n > len(self.buf):
            raise NeedMore
        rv = self.buf[self.pos:self.pos+n]
        self.pos += n
        return rv

    def byte(self):
        return self.take(1)[0]

    def varint(self):
        b = self.byte()
        if b < 253:
            return b
        return int.from_bytes(self.take({253:2, 254:4, 255:8}[b]), 'little')

    def be32(self):
        return struct.unpack('>I', self.take(4))[0]

    def at_end(self):
        return self.pos == len(self.buf)

def ser_varint(n):
    if n < 253:
        return bytes([n])
    elif n < 0x10000:
        return struct.pack('<BH', 253, n)
    elif n < 0x100000000:
        return struct.pack('<BI', 254, n)
    return struct.pack('<BQ', 255, n)

class SoftDongle:
    #
    # Holds the device state between APDUs. Keys are derived from the
    # seed and path with a hash, so they are stable but not BIP-32.
    #
    def __init__(self, seed=DEFAULT_SEED, pin=None, max_attempts=3,
                        confirmation_type=0x00, bad_signatures=False):
        self.seed = seed
        self.pin = pin
        self.max_attempts = max_attempts
        self.attempts_left = max_attempts
        self.unlocked = (pin is None)
        self.mac_key = sha256s(b'mac' + seed)

        # non-zero means user must confirm on a second screen, which we fake
        self.confirmation_type = confirmation_type

        # sign with the wrong key, so host checks can be tested
        # - True for every signature, or a set of signature numbers (from zero)
        self.bad_signatures = bad_signatures
        self.num_signed = 0

        self._reset()

    def _reset(self):
        self.ti_buf = None          # trusted input stream
        self.hs_buf = None          # hash input start stream
        self.inputs_part = None     # parsed: version + inputs, ready to hash
        self.out_buf = None         # finalize stream
        self.outputs_part = None    # parsed: output count + outputs
        self.session = False        # a transaction has been started

    def __repr__(self):
        return '<SoftDongle pin=%s unlocked=%s>' % ('yes' if self.pin else 'no', self.unlocked)

    #
    # Keys
    #
    def privkey(self, path):
        ser = bytes([len(path)]) + b''.join(struct.pack('>I', i) for i in path)
        return PrivateKey(sha256s(self.seed + ser))

    def pubkey(self, path, compressed=True):
        return self.privkey(path).public_key.format(compressed=compressed)

    def address(self, path):
        return base58.b58encode_check(b'\x00' + Hash160(self.pubkey(path))).decode('ascii')

    #
    # APDU entry point
    #
    def process_apdu(self, apdu):
        # takes a full command frame, returns response data + status word
        apdu = bytes(apdu)

        try:
            if len(apdu) < 5 or len(apdu) != 5 + apdu[4]:
                raise SWError(0x6700)
            cla, ins, p1, p2 = apdu[0:4]
            data = apdu[5:]

            if cla != 0xE0:
                raise SWError(0x6E00)

            name = COMMANDS.get(ins)
            if not name:
                raise SWError(0x6D00)

            resp = getattr(self, 'cmd_' + name)(p1, p2, data)
            sw = 0x9000
        except SWError as exc:
            if DEBUG:
                print(f"ERROR: {exc}")
            resp = b''
            sw = exc.sw

        return bytes(resp) + struct.pack('>H', sw)

    #
    # Commands
    #
    def cmd_get_firmware_version(self, p1, p2, data):
        return FIRMWARE_VERSION

    def cmd_verify_pin(self, p1, p2, data):
        if self.pin is None:
            return b''

        if not self.attempts_left:
            raise SWError(0x6FAA)

        if not hmac.compare_digest(data, self.pin):
            self.attempts_left -= 1
            raise SWError(0x63C0 | self.attempts_left)

        self.attempts_left = self.max_attempts
        self.unlocked = True

        return b''

    def _parse_path(self, rd):
        count = rd.byte()
        return [rd.be32() for i in range(count)]

    def cmd_get_wallet_pubkey(self, p1, p2, data):
        try:
            rd = Reader(data)
            path = self._parse_path(rd)
        except NeedMore:
            raise SWError(0x6700)
        if not rd.at_end():
            raise SWError(0x6700)

        pubkey = self.pubkey(path, compressed=False)
        addr = self.address(path).encode('ascii')
        chain_code = sha256s(b'chain' + self.privkey(path).secret)

        return bytes([len(pubkey)]) + pubkey + bytes([len(addr)]) + addr + chain_code

    def cmd_get_trusted_input(self, p1, p2, data):
        if p1 == 0x00:
            self.ti_buf = bytearray()
        elif p1 != 0x80:
            raise SWError(0x6B00)
        elif self.ti_buf is None:
            raise SWError(0x6985)

        self.ti_buf.extend(data)

        try:
            rd = Reader(self.ti_buf)
            index = rd.be32()
            start = rd.pos

            rd.take(4)                      # version
            for i in range(rd.varint()):
                rd.take(36)                 # outpoint
                rd.take(rd.varint())        # scriptSig
                rd.take(4)                  # sequence

            amounts = []
            for i in range(rd.varint()):
                amounts.append(rd.take(8))
                rd.take(rd.varint())        # scriptPubKey

            rd.take(4)                      # locktime
        except NeedMore:
            return b''

        raw = bytes(self.ti_buf[start:rd.pos])
        self.ti_buf = None

        if not rd.at_end() or index >= len(amounts):
            raise SWError(0x6A80)

        txid = sha256d(raw)
        blob = bytes([0x32, 0x00]) + os.urandom(2) + txid + struct.pack('<I', index) \
                    + amounts[index]

        return blob + self._mac(blob)

    def _mac(self, blob):
        return hmac.new(self.mac_key, blob, sha256).digest()[0:8]

    def cmd_hash_input_start(self, p1, p2, data):
        if p1 == 0x00:
            if p2 == 0x00:
                self._reset()
                self.session = True
            elif p2 == 0x80:
                if not self.session:
                    raise SWError(0x6985)
            else:
                raise SWError(0x6B00)

            self.hs_buf = bytearray()
            self.inputs_part = None
        elif p1 != 0x80:
            raise SWError(0x6B00)
        elif self.hs_buf is None:
            raise SWError(0x6985)

        self.hs_buf.extend(data)

        try:
            rd = Reader(self.hs_buf)
            rv = bytearray(rd.take(4))      # version
            count = rd.varint()
            rv.extend(ser_varint(count))

            for i in range(count):
                kind = rd.byte()
                if kind == 0x01:
                    blob = rd.take(rd.byte())
                    if len(blob) != 56 or blob[0] != 0x32 \
                            or not hmac.compare_digest(self._mac(blob[0:48]), blob[48:56]):
                        raise SWError(0x6A80, 'bad trusted input')
                    outpoint = blob[4:40]
                elif kind == 0x00:
                    outpoint = rd.take(36)
                else:
                    raise SWError(0x6A80)

                script = rd.take(rd.varint())
                seq = rd.take(4)

                rv.extend(outpoint + ser_varint(len(script)) + script + seq)
        except NeedMore:
            return b''

        if not rd.at_end():
            raise SWError(0x6A80)

        self.inputs_part = bytes(rv)
        self.hs_buf = None
        self.outputs_part = None

        return b''

    def cmd_hash_input_finalize_full(self, p1, p2, data):
        if self.inputs_part is None:
            raise SWError(0x6985)
        if p1 not in (0x00, 0x80):
            raise SWError(0x6B00)

        if self.out_buf is None:
            self.out_buf = bytearray()
        self.out_buf.extend(data)

        if p1 != 0x80:
            return b''

        buf = bytes(self.out_buf)
        self.out_buf = None

        try:
            rd = Reader(buf)
            for i in range(rd.varint()):
                rd.take(8)
                rd.take(rd.varint())
        except NeedMore:
            raise SWError(0x6A80, 'truncated outputs')

        if not rd.at_end():
            raise SWError(0x6A80)

        self.outputs_part = buf

        # no output data, then how user confirms
        return bytes([0x00, self.confirmation_type])

    def cmd_hash_sign(self, p1, p2, data):
        if self.inputs_part is None or self.outputs_part is None:
            raise SWError(0x6985)

        try:
            rd = Reader(data)
            path = self._parse_path(rd)
            pin = rd.take(rd.byte())
            lock_time = rd.be32()
            sighash_type = rd.byte()
        except NeedMore:
            raise SWError(0x6700)
        if not rd.at_end():
            raise SWError(0x6700)

        if not self.unlocked and not (pin and self.pin and hmac.compare_digest(pin, self.pin)):
            raise SWError(0x6982)

        preimage = self.inputs_part + self.outputs_part \
                        + struct.pack('<I', lock_time) + struct.pack('<I', sighash_type)
        digest = sha256d(preimage)

        bad = self.bad_signatures
        if bad is True or (bad and self.num_signed in bad):
            path = path + [0]
        self.num_signed += 1

        sig = self.privkey(path).sign_recoverable(digest, hasher=None)
        der = bytearray(cdata_to_der(deserialize_compact(sig[0:64])))

        # real devices put parity of R into the tag byte
        der[0] = 0x30 | (sig[64] & 0x01)

        # hash is used up, but trusted inputs for later ones remain valid
        self.inputs_part = None
        self.outputs_part = None

        return bytes(der) + bytes([sighash_type])

    def emulate(self, pipename):
        # Using a unix socket as connector, run as an emulator for the device.
        import atexit, socket

        # manage unix socket cleanup for client
        def sock_cleanup():
            if os.path.exists(pipename):
                os.unlink(pipename)
        sock_cleanup()
        atexit.register(sock_cleanup)

        pipe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)

        pipe.bind(pipename)
        pipe.listen()
        while 1:
            print(f"Waiting for new connection on: {pipename}")
            con, addr = pipe.accept()

            print(f"Connected.")

            while 1:
                msg = con.recv(4096)
                if not msg: break

                resp = self.process_apdu(msg)

                if DEBUG:
                    print(f">> {B2A(msg)}\n<< {B2A(resp)}")

                con.sendall(resp)

            print(f"Disconnected.")

class EmulatorTransport(LedgerTransportABC):
    #
    # Loopback to a SoftDongle in this process. Remembers every frame
    # sent, along with the thread that sent it.
    #
    name = 'loopback'
    is_emulator = True

    def __init__(self, dongle=None):
        super().__init__()
        self.dongle = dongle or SoftDongle()
        self.log = []

    def _exchange_raw(self, apdu):
        self.log.append((threading.get_ident(), apdu))
        return self.dongle.process_apdu(apdu)

    def sent(self, ins=None):
        # frames sent so far, optionally only those for one INS
        return [a for _, a in self.log if ins is None or a[1] == ins]

@click.group()
def main():
    pass

@main.command('emulate')
@click.option('--pipe', '-p', default=os.environ.get('LWALLET_EMULATOR', '/tmp/lwallet-emu'),
                    help="Unix socket to listen on")
@click.option('--pin', default=None, help="Require this PIN before signing")
@click.option('--debug', '-d', is_flag=True, help="Show traffic")
def emulate_device(pipe, pin, debug):
    '''
        Emulate a device on a Unix socket.
    '''
    global DEBUG
    DEBUG = debug

    dongle = SoftDongle(pin=pin.encode('ascii') if pin else None)
    print(dongle)
    print(f"Key for m: {B2A(dongle.pubkey([]))}")

    dongle.emulate(pipe)

if __name__ == '__main__':
    main()

# EOF
