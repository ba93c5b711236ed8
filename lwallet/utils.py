# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
import struct, base58
from binascii import b2a_hex
from bitcoin.core import Hash160
from .constants import *
from .exceptions import EncodingError

# show bytes as hex in a string
B2A = lambda x: b2a_hex(x).decode('ascii')

UINT32_MAX = 0xffff_ffff
UINT64_MAX = 0xffff_ffff_ffff_ffff

#
# Wire primitives. All of these append to a bytearray.
#
# Length prefixes are NOT added by write_buffer; the protocol mixes both styles:
#   - var-int length: script lengths, input/output counts
#   - single byte length: path element count, PIN, trusted input blob
#
def write_uint32_be(buf, v):
    buf.extend(struct.pack('>I', v))

def write_buffer(buf, data):
    buf.extend(data)

def write_varint(buf, n):
    # bitcoin "compact size"
    if not (0 <= n <= UINT64_MAX):
        raise EncodingError(f"Can't encode as varint: {n}")

    if n < 253:
        buf.extend(struct.pack("B", n))
    elif n < 0x10000:
        buf.extend(struct.pack("<BH", 253, n))
    elif n < 0x100000000:
        buf.extend(struct.pack("<BI", 254, n))
    else:
        buf.extend(struct.pack("<BQ", 255, n))

def ser_compact_size(n):
    rv = bytearray()
    write_varint(rv, n)
    return bytes(rv)

def read_varint(buf, offset=0):
    # returns (value, new offset)
    if offset >= len(buf):
        raise ValueError("Can't read varint: buffer exhausted")

    prefix = buf[offset]
    width = {253: 2, 254: 4, 255: 8}.get(prefix, 0)
    if not width:
        return prefix, offset+1

    here = buf[offset+1:offset+1+width]
    if len(here) != width:
        raise ValueError("Can't read varint: truncated")

    return int.from_bytes(here, 'little'), offset+1+width

def force_bytes(foo):
    # convert strings to bytes where needed
    return foo.encode('ascii') if isinstance(foo, str) else foo

# high bit set in LE32 indicating hardened BIP-32 path component
HARDENED = 0x8000_0000

def path_component_in_range(num: int) -> bool:
    # cannot be less than 0
    # cannot be more than (2 ** 31) - 1
    if 0 <= num < HARDENED:
        return True
    return False

def path2str(path):
    # take numeric path (list of numbers) and convert to human form
    # - standardizing on "m/84h" style
    return '/'.join(['m'] + [str(i & ~HARDENED)+('h' if i&HARDENED else '') for i in path])

def str2path(path):
    # normalize notation and return numbers
    rv = []

    for i in path.split('/'):
        if i == 'm':
            continue
        if not i:
            # trailing or duplicated slashes
            continue

        if i[-1] in "'phHP":
            if len(i) < 2:
                raise ValueError(f"Malformed bip32 path component: {i}")
            num = int(i[:-1], 0)
            if not path_component_in_range(num):
                raise ValueError(f"Hardened path component out of range: {i}")
            here = num | HARDENED
        else:
            here = int(i, 0)
            if not path_component_in_range(here):
                raise ValueError(f"Non-hardened path component out of range: {i}")

        rv.append(here)

    return rv

def serialize_path(path) -> bytes:
    # one byte of depth, then each component as BE32
    # - accepts "m/44h/0h" text or a list of numbers
    if isinstance(path, str):
        path = str2path(path)

    if len(path) > MAX_PATH_DEPTH:
        raise EncodingError(f"Path too deep: {len(path)} components, max {MAX_PATH_DEPTH}")

    rv = bytearray([len(path)])
    for i in path:
        if not (0 <= i <= UINT32_MAX):
            raise EncodingError(f"Path component out of range: {i}")
        write_uint32_be(rv, i)

    return bytes(rv)

def render_address(pubkey, testnet=False):
    # make the classic P2PKH address for a (compressed) pubkey
    prefix = b'\x6f' if testnet else b'\x00'
    return base58.b58encode_check(prefix + Hash160(pubkey)).decode('ascii')

# EOF
