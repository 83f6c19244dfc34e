import datetime
import pathlib
import sys
import textwrap
import typing

import click.testing
import pytest

import obliviate.cli
from obliviate.age import Age
from obliviate.backups import BackupStore
from obliviate.config import Config, save
from obliviate.keys import KeyLifecycleManager
from obliviate.operations import SecretOperations
from obliviate.sops import SOPS

FAKE_AGE = '''
import sys

args = sys.argv[1:]
path = args[-1]

with open({log!r}, 'a') as log:
    log.write(' '.join(args) + '\\n')

if '--encrypt' in args:
    first = sys.stdin.readline().rstrip('\\n')
    second = sys.stdin.readline().rstrip('\\n')
    if first != second:
        sys.exit("age: error: passphrases didn't match")
    with open(path, 'rb') as f:
        data = f.read()
    sys.stdout.write('FAKE-AGE ' + first.encode().hex() + ' ' + data.hex() + '\\n')
elif '--decrypt' in args:
    passphrase = sys.stdin.readline().rstrip('\\n')
    with open(path) as f:
        _, expected, data = f.read().split()
    if passphrase.encode().hex() != expected:
        sys.exit('age: error: incorrect passphrase')
    sys.stdout.buffer.write(bytes.fromhex(data))
else:
    sys.exit('age: error: unknown arguments')
'''

FAKE_KEYGEN = '''
import hashlib
import os
import sys

def public(key):
    return 'age1' + hashlib.sha256(key.encode()).hexdigest()[:32]

if sys.argv[1:] == ['-y']:
    print(public(sys.stdin.read().strip()))
else:
    key = 'AGE-SECRET-KEY-1' + os.urandom(16).hex().upper()
    print('# created: 2026-01-01T00:00:00Z')
    print('# public key: ' + public(key))
    print(key)
'''

FAKE_SOPS = '''
import json
import os
import sys

args = sys.argv[1:]
path = args[-1]
failure = os.environ.get('FAKE_SOPS_FAIL')


def read():
    with open(path) as f:
        return f.read()


def write(target, text):
    with open(target, 'w') as f:
        f.write(text)


def parse(text):
    if not text.startswith('ENC['):
        return None, text
    header, _, body = text.partition('\\n')
    return [r for r in header[4:-1].split(',') if r], body


if failure:
    if ('--in-place' in args or len(args) == 1) and os.path.exists(path):
        write(path, 'corrupted')
    sys.exit(failure)

recipients, body = parse(read())

if args[0] == 'filestatus':
    status = {'encrypted': recipients is not None}
    if recipients:
        status['recipients'] = [{'recipient': r} for r in recipients]
    print(json.dumps(status))
elif args[0] == '--encrypt':
    if recipients is not None:
        sys.exit('sops: error: File is already encrypted')
    new = args[args.index('--age') + 1].split(',') if '--age' in args else []
    write(path, 'ENC[' + ','.join(new) + ']\\n' + body)
elif args[0] == '--decrypt':
    if recipients is None:
        sys.exit('Error: failed to decrypt file: sops metadata not found')
    if '--in-place' in args:
        write(path, body)
    elif '--output' in args:
        write(args[args.index('--output') + 1], body)
    else:
        sys.stdout.write(body)
elif args[0] == 'rotate':
    if recipients is None:
        sys.exit('Error: failed to decrypt file: sops metadata not found')
    if '--add-age' in args:
        recipients += args[args.index('--add-age') + 1].split(',')
    write(path, 'ENC[' + ','.join(recipients) + ']\\n' + body)
elif len(args) == 1:
    write(path, 'ENC[' + ','.join(recipients or []) + ']\\n' + body + 'edited: true\\n')
else:
    sys.exit('sops: unknown arguments')
'''


BINARY_SOPS = '''
import os
import sys

if os.environ.get('BINARY_SOPS_FAIL'):
    sys.stderr.buffer.write(b'Error: failed to decrypt \\xff file\\n')
    sys.exit(1)

sys.stdout.buffer.write(b'\\xff\\xfe secret')
'''


def executable(path: pathlib.Path, source: str) -> str:
    path.write_text(f'#!{sys.executable}\n' + textwrap.dedent(source))
    path.chmod(0o755)
    return path.as_posix()


@pytest.fixture()
def age_log(tmp_path: pathlib.Path) -> pathlib.Path:
    return tmp_path / 'age.log'


@pytest.fixture()
def tools(tmp_path: pathlib.Path, age_log: pathlib.Path) -> typing.Dict[str, str]:
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir()
    return {
        'age': executable(bin_dir / 'age', FAKE_AGE.format(log=age_log.as_posix())),
        'age-keygen': executable(bin_dir / 'age-keygen', FAKE_KEYGEN),
        'sops': executable(bin_dir / 'sops', FAKE_SOPS),
        'binary-sops': executable(bin_dir / 'binary-sops', BINARY_SOPS),
    }


@pytest.fixture()
def age(tools, tmp_path: pathlib.Path) -> Age:
    temp_dir = tmp_path / 'tmp'
    temp_dir.mkdir()
    return Age(age=tools['age'], keygen=tools['age-keygen'], temp_dir=temp_dir, shred=None)


@pytest.fixture()
def config(tmp_path: pathlib.Path) -> Config:
    return Config.default(home=tmp_path / 'home', directory=tmp_path / 'app')


@pytest.fixture()
def keys(config: Config, age: Age) -> typing.Iterator[KeyLifecycleManager]:
    manager = KeyLifecycleManager(
        key_path=config.key_path,
        encrypted_key_path=config.encrypted_key_path,
        auto_delete_interval=datetime.timedelta(minutes=5),
        age=age)
    yield manager
    manager.close()


@pytest.fixture()
def store(config: Config) -> BackupStore:
    return BackupStore(config.backup_dir)


@pytest.fixture()
def secrets(store: BackupStore, tools) -> SecretOperations:
    return SecretOperations(store=store, sops=SOPS(executable=tools['sops']))


@pytest.fixture()
def secret_file(tmp_path: pathlib.Path) -> pathlib.Path:
    path = tmp_path / 'secrets.yaml'
    path.write_text('foo: bar\n')
    return path


@pytest.fixture()
def config_file(tmp_path: pathlib.Path, config: Config) -> pathlib.Path:
    path = tmp_path / 'config.json'
    save(config, path)
    return path


@pytest.fixture()
def invoke(tmp_path: pathlib.Path, tools, config_file: pathlib.Path):
    def invoke_func(arguments: typing.Sequence[str], input: str = ''):
        assert all(isinstance(arg, str) for arg in arguments)
        runner = click.testing.CliRunner()
        return runner.invoke(obliviate.cli.main, [
            '--config', config_file.as_posix(),
            '--path', tmp_path.as_posix(),
            '--sops', tools['sops'],
            '--age', tools['age'],
            '--age-keygen', tools['age-keygen'],
            *arguments,
        ], input=input)

    return invoke_func
