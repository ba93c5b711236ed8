# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# transport.py
#
# Implement the desktop to device connection: PC/SC card readers, USB HID
# dongles, and the emulator (over a Unix socket).
#
#
import os, struct, threading
from .utils import B2A
from .constants import *
from .proto import LedgerClient

# Change this to see traffic details
VERBOSE = False

def find_devices():
    #
    # Search for connected devices, and wrap each in a client.
    #
    # - generator function.
    #

    # emulation running on a Unix socket
    sim = LedgerUnixTransport.find_simulator()
    if sim:
        yield LedgerClient(sim)

    yield from (LedgerClient(tr) for tr in LedgerHIDTransport.enumerate())
    yield from (LedgerClient(tr) for tr in LedgerPCSCTransport.enumerate())

def find_first():
    # operate on the first device we can find
    for c in find_devices():
        return c

    return None

class LedgerTransportABC:
    #
    # Abstract base class. Moves one APDU to device and brings back the response.
    #
    name = '?'
    is_emulator = False

    def __init__(self):
        # device keeps state between commands; only one conversation at a time
        # - re-entrant: public operations nest inside each other
        self._lock = threading.RLock()

    def __repr__(self):
        return '<%s %s>' % (self.__class__.__name__, self.name)

    def lock(self):
        # use as:   with tr.lock(): ...
        return self._lock

    def _exchange_raw(self, apdu):
        # send complete APDU, return response bytes (including status word)
        raise NotImplementedError

    def close(self):
        # release resources
        pass

    def exchange(self, apdu):
        apdu = bytes(apdu)

        if VERBOSE:
            print(f">> {B2A(apdu)}")

        with self._lock:
            resp = bytes(self._exchange_raw(apdu))

        if VERBOSE:
            print(f"<< {B2A(resp)}")

        return resp

class LedgerPCSCTransport(LedgerTransportABC):
    #
    # For talking to a card (or a dongle that looks like one) via PC/SC reader.
    #

    @classmethod
    def enumerate(cls):
        from smartcard.System import readers as get_readers
        from smartcard.Exceptions import CardConnectionException, NoCardException

        for r in get_readers():
            conn = r.createConnection()

            try:
                conn.connect()
            except (CardConnectionException, NoCardException):
                #print(f"Empty reader: {r}")
                continue

            yield cls(conn, name=str(r))

    def __init__(self, card_conn, name='PC/SC'):
        super().__init__()
        self._conn = card_conn
        self.name = name

    def close(self):
        self._conn.disconnect()
        del self._conn

    def _exchange_raw(self, apdu):
        resp, sw1, sw2 = self._conn.transmit(list(apdu))
        return bytes(resp) + bytes([sw1, sw2])

class LedgerHIDTransport(LedgerTransportABC):
    #
    # USB HID dongles. APDUs are wrapped into 64-byte reports:
    #
    #   [channel:2][tag:1][seq:2][total length:2 (first report only)][data...]
    #
    @classmethod
    def enumerate(cls):
        import hid

        for vid, pids in LEDGER_USB_IDS.items():
            for info in hid.enumerate(vid, 0):
                if pids is not None and info['product_id'] not in pids:
                    continue

                # newer dongles have several interfaces, only one talks APDU
                if info.get('interface_number', 0) not in (0, -1):
                    continue

                dev = hid.device()
                dev.open_path(info['path'])

                yield cls(dev, name=info.get('product_string') or 'HID')

    def __init__(self, dev, name='HID', timeout=HID_TIMEOUT_MS):
        super().__init__()
        self.dev = dev
        self.name = name
        self.timeout = timeout

    def close(self):
        self.dev.close()
        del self.dev

    def _exchange_raw(self, apdu):
        data = struct.pack('>H', len(apdu)) + apdu
        here_max = HID_PACKET_SIZE - 5

        seq = 0
        for offset in range(0, len(data), here_max):
            pkt = struct.pack('>HBH', HID_CHANNEL, HID_TAG_APDU, seq) + data[offset:offset+here_max]
            pkt += bytes(HID_PACKET_SIZE - len(pkt))

            # leading zero is the HID report number
            rv = self.dev.write(b'\x00' + pkt)
            if rv < 0:
                raise RuntimeError("USB write failed")
            seq += 1

        # collect response, framed in the same manner
        resp = b''
        expect = None
        seq = 0
        while expect is None or len(resp) < expect:
            buf = bytes(self.dev.read(HID_PACKET_SIZE, timeout_ms=self.timeout))
            if not buf:
                raise RuntimeError("Timeout reading from USB")

            chan, tag, got_seq = struct.unpack('>HBH', buf[0:5])
            if (chan, tag, got_seq) != (HID_CHANNEL, HID_TAG_APDU, seq):
                raise RuntimeError("Corrupt USB framing")

            body = buf[5:]
            if seq == 0:
                expect, = struct.unpack('>H', body[0:2])
                body = body[2:]

            resp += body
            seq += 1

        return resp[0:expect]

class LedgerUnixTransport(LedgerTransportABC):
    #
    # Emulation running over a Unix socket.
    #
    name = 'emulator'
    is_emulator = True

    @classmethod
    def find_simulator(cls):
        fn = os.environ.get('LWALLET_EMULATOR', DEFAULT_EMULATOR_PIPE)
        if os.path.exists(fn):
            return cls(fn)
        return None

    def __init__(self, pipename):
        import socket
        super().__init__()
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.connect(pipename)

    def close(self):
        self.sock.close()

    def _exchange_raw(self, apdu):
        # send and receive response back
        self.sock.sendall(apdu)
        resp = self.sock.recv(4096)

        if not resp:
            # closed socket causes this
            raise RuntimeError("Emu crashed?")

        return resp

# EOF
