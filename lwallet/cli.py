#!/usr/bin/env python
#
# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# To use this, install with:
#
#   pip install --editable '.[cli]'
#
# That will create the command "lwallet" in your path.
#
#
import click, sys, time
from getpass import getpass
from bitcoin.core import CTransaction, b2x, x

from lwallet.utils import render_address, path2str, str2path, B2A
from lwallet.exceptions import LedgerError
from lwallet.transport import find_devices
from lwallet.txn import Coin, p2pkh_script
from lwallet import __version__

# dict of options that apply to all commands
global global_opts
global_opts = dict()

# Cleanup display (supress traceback) for user-feedback exceptions
_sys_excepthook = sys.excepthook
def my_hook(ty, val, tb):
    if issubclass(ty, (LedgerError, RuntimeError)):
        print("FATAL: %s" % val, file=sys.stderr)
    else:
        return _sys_excepthook(ty, val, tb)
sys.excepthook=my_hook

def fail(msg):
    # show message and stop
    click.echo(f"FAILURE: {msg}", err=True)
    sys.exit(1)

def get_device():
    # Pick a device to work with
    global global_opts
    wait_for_it = global_opts.get('wait', False)

    be_verbose = global_opts.get('verbose', False)
    if be_verbose:
        import lwallet.transport as tt
        tt.VERBOSE = True

    first = True
    while 1:
        for dev in find_devices():
            return dev

        if not wait_for_it:
            fail("No device found. Is it plugged in?")

        if first:
            click.echo("Waiting for device...")
            first = False

        time.sleep(1)

def read_tx(hex_or_file):
    # transaction as hex on command line, or a file holding same
    if hex_or_file == '-':
        hex_or_file = sys.stdin.read()
    elif not all(c in '0123456789abcdefABCDEF' for c in hex_or_file.strip()):
        with open(hex_or_file, 'rt') as fd:
            hex_or_file = fd.read()

    try:
        return CTransaction.deserialize(x(hex_or_file.strip()))
    except Exception as exc:
        fail(f"Can't decode transaction: {exc}")

def cleanup_path(path):
    try:
        return str2path(path)
    except ValueError as exc:
        fail(str(exc))

# Accept any prefix of a command name.
#
# from <https://click.palletsprojects.com/en/8.0.x/advanced/?#command-aliases>
class AliasedGroup(click.Group):
    def get_command(self, ctx, cmd_name):
        rv = click.Group.get_command(self, ctx, cmd_name)
        if rv is not None:
            return rv
        matches = [x for x in self.list_commands(ctx)
                   if x.startswith(cmd_name)]
        if not matches:
            return None
        elif len(matches) == 1:
            return click.Group.get_command(self, ctx, matches[0])
        ctx.fail(f"Abiguous command. Pick one of: {' | '.join(sorted(matches))}")

    def resolve_command(self, ctx, args):
        # always return the full command name
        _, cmd, args = super().resolve_command(ctx, args)
        return cmd.name, cmd, args


#
# Options we want for all commands
#
@click.group(cls=AliasedGroup)
@click.option('--wait', '-w', is_flag=True,
                    help="Waits until a device is connected.")
@click.option('--verbose', '-v', is_flag=True,
                    help="Show traffic with device.")
@click.option('--pdb', is_flag=True,
                    help="Prepare patient for surgery to remove bugs.")
@click.version_option(version=__version__)
def main(**kws):
    '''
    Talk to a Ledger-style Bitcoin signing device over USB, a card reader,
    or to the emulator.

    Any distinct prefix works for all commands: "pub" for "pubkey".
    '''
    # implement PDB option here
    if kws.pop('pdb', False):
        import pdb, sys
        def doit(ex_cls, ex, tb):
            pdb.pm()
        sys.excepthook = doit

    # global options, mostly not considered here
    global global_opts
    global_opts.update(kws)


@main.command('debug')
def interactive_debug():
    "Start interactive (local) debug session."
    import code

    # useful stuff
    import pdb
    from pdb import pm
    D = get_device()
    X = D.exchange_apdu

    cli = code.InteractiveConsole(locals=dict(globals(), **locals()))
    cli.interact(banner="""\
Go for it: 'D' is the connected device, X=D.exchange_apdu ... X(0xe0, 0xc4, 0, 0)""", exitmsg='')

@main.command('list')
def list_devices():
    "List all devices detected."

    count = 0
    for dev in find_devices():
        click.echo(repr(dev) + ('  (emulator)' if dev.tr.is_emulator else ''))
        count += 1

    if not count:
        click.echo("(none found)")

@main.command('version')
def get_version():
    "Get the version of the device's firmware"

    dev = get_device()
    fw = dev.get_firmware_version()

    click.echo(str(fw))
    click.echo('Features: %s' % (fw.features.name or int(fw.features)))

@main.command('pubkey')
@click.argument('path', type=str, metavar="m/44h/0h/0h/0/0")
@click.option('--testnet', '-t', is_flag=True, help='Show testnet address')
def get_pubkey(path, testnet):
    "Show public key, chain code and address at a derivation path"

    dev = get_device()
    rv = dev.get_wallet_pubkey(cleanup_path(path))

    click.echo('Path:       %s' % path2str(cleanup_path(path)))
    click.echo('Public key: %s' % B2A(rv.compressed_public_key))
    click.echo('Chain code: %s' % B2A(rv.chain_code))
    click.echo('Address:    %s' % render_address(rv.compressed_public_key, testnet))

@main.command('trusted-input')
@click.argument('txn', type=str, metavar="TXN_HEX")
@click.argument('index', type=int)
def get_trusted_input(txn, index):
    "Have the device attest to the value of one output of a transaction"

    dev = get_device()
    tx = read_tx(txn)

    if not (0 <= index < len(tx.vout)):
        fail(f"Transaction only has {len(tx.vout)} outputs")

    ti = dev.get_trusted_input(tx, index)

    click.echo('Outpoint: %s' % ti.outpoint)
    click.echo('Amount:   %d sats' % ti.amount)
    click.echo(ti.hex())

@main.command('sign')
@click.argument('path', type=str, metavar="m/44h/0h/0h/0/0")
@click.argument('txn', type=str, metavar="TXN_HEX")
@click.option('--parent', '-p', 'parents', multiple=True, metavar="TXN_HEX",
                    help="Full transaction being spent by an input (repeat as needed)")
@click.option('--pin', is_flag=True, help='Prompt for PIN first')
def sign_txn(path, txn, parents, pin):
    '''Sign every input that pays to our key at PATH.

    All parent transactions are needed, not just the ones being spent by us.
    '''
    dev = get_device()
    numeric = cleanup_path(path)

    tx = read_tx(txn)
    parents = [read_tx(p) for p in parents]

    if pin:
        dev.verify_pin(getpass("Enter PIN: "))

    # which inputs are ours? those that pay exactly to our P2PKH script
    pubkey = dev.get_wallet_pubkey(numeric).compressed_public_key
    ours = p2pkh_script(pubkey)
    by_id = {bytes(p.GetTxid()): p for p in parents}

    coins = []
    for txin in tx.vin:
        parent = by_id.get(bytes(txin.prevout.hash))
        if parent is None or txin.prevout.n >= len(parent.vout):
            continue
        coin = Coin.from_parent(parent, txin.prevout.n)
        if coin.txout.scriptPubKey == ours:
            coins.append(coin)

    if not coins:
        fail("None of the inputs pay to that key.")

    signed = dev.sign_transaction(numeric, coins, parents, tx, raise_on_error=True)

    click.echo(b2x(signed.serialize()))

# EOF
