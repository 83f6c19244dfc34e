import pytest

from obliviate.backups import BackupStore
from obliviate.errors import ErrorKind, ObliviateError
from obliviate.operations import SecretOperations
from obliviate.sops import SOPS


class BrokenStore(BackupStore):
    def restore_backup(self, backup, path):
        raise ObliviateError(ErrorKind.FILE_OPERATION, "Disk on fire")


class ExplodingSOPS(SOPS):
    def encrypt(self, path, recipients):
        path.write_text('partial')
        raise RuntimeError("boom")


def test_encrypt(secrets, secret_file):
    result = secrets.encrypt(secret_file, ['age1abc', 'age1def'])
    assert result.changed
    assert result.path == secret_file
    assert secret_file.read_text() == 'ENC[age1abc,age1def]\nfoo: bar\n'

    backups = secrets.backups(secret_file)
    assert len(backups) == 1
    assert backups[0].read_text() == 'foo: bar\n'


def test_encrypt_default_recipients(secrets, secret_file):
    secrets = SecretOperations(
        store=secrets.store, sops=secrets.sops, default_recipients=['age1default'])
    secrets.encrypt(secret_file)
    assert secret_file.read_text().startswith('ENC[age1default]')


def test_failure_rolls_back(secrets, secret_file, monkeypatch):
    monkeypatch.setenv('FAKE_SOPS_FAIL', 'Error: failed to decrypt file')

    with pytest.raises(ObliviateError) as error:
        secrets.encrypt(secret_file)

    assert error.value.kind == ErrorKind.SECURITY
    assert error.value.context['path'] == str(secret_file)
    assert secret_file.read_text() == 'foo: bar\n'
    assert not secrets.locks.held(secret_file)


def test_unrecognised_failure_rolls_back(secrets, secret_file, monkeypatch):
    monkeypatch.setenv('FAKE_SOPS_FAIL', 'out of cheese')

    with pytest.raises(ObliviateError) as error:
        secrets.rotate(secret_file)

    assert error.value.kind == ErrorKind.GENERAL
    assert error.value.message == "SOPS operation failed"
    assert error.value.context['details'] == 'out of cheese'
    assert secret_file.read_text() == 'foo: bar\n'


def test_unexpected_exception_rolls_back(store, secret_file):
    secrets = SecretOperations(store=store, sops=ExplodingSOPS())

    with pytest.raises(RuntimeError):
        secrets.encrypt(secret_file)
    assert secret_file.read_text() == 'foo: bar\n'
    assert not secrets.locks.held(secret_file)


def test_already_encrypted(secrets, secret_file):
    secrets.encrypt(secret_file, ['age1abc'])
    encrypted = secret_file.read_text()

    result = secrets.encrypt(secret_file, ['age1abc'])
    assert not result.changed
    assert secret_file.read_text() == encrypted
    assert len(secrets.backups(secret_file)) == 2


def test_failed_rollback(config, tools, secret_file, monkeypatch):
    secrets = SecretOperations(
        store=BrokenStore(config.backup_dir),
        sops=SOPS(executable=tools['sops']))
    monkeypatch.setenv('FAKE_SOPS_FAIL', 'out of cheese')

    with pytest.raises(ObliviateError) as error:
        secrets.encrypt(secret_file)

    assert error.value.kind == ErrorKind.FILE_OPERATION
    assert error.value.message == "Failed to encrypt file and rollback also failed"
    assert set(error.value.context) == {'path', 'error', 'stderr', 'rollback_error'}
    assert error.value.context['stderr'] == 'out of cheese'
    assert not secrets.locks.held(secret_file)


def test_decrypt_to_output(secrets, secret_file, tmp_path):
    secrets.encrypt(secret_file, ['age1abc'])
    encrypted = secret_file.read_text()
    output = tmp_path / 'secrets.dec.yaml'

    result = secrets.decrypt(secret_file, output)
    assert result.path == output
    assert output.read_text() == 'foo: bar\n'
    assert secret_file.read_text() == encrypted


def test_decrypt_unencrypted_file(secrets, secret_file, tmp_path):
    with pytest.raises(ObliviateError) as error:
        secrets.decrypt(secret_file, tmp_path / 'output.yaml')
    assert error.value.kind == ErrorKind.SECURITY


def test_decrypt_in_place(secrets, secret_file):
    secrets.encrypt(secret_file, ['age1abc'])
    secrets.decrypt_in_place(secret_file)
    assert secret_file.read_text() == 'foo: bar\n'


def test_edit(secrets, secret_file):
    secrets.encrypt(secret_file, ['age1abc'])
    result = secrets.edit(secret_file)
    assert result.changed
    assert secret_file.read_text().endswith('edited: true\n')


def test_add_recipient(secrets, secret_file):
    secrets.encrypt(secret_file, ['age1abc'])
    secrets.add_recipient(secret_file, 'age1def')
    assert secrets.status(secret_file).recipients == ('age1abc', 'age1def')


def test_rotate(secrets, secret_file):
    secrets.encrypt(secret_file, ['age1abc'])
    assert secrets.rotate(secret_file).changed
    assert secrets.status(secret_file).recipients == ('age1abc',)


def test_status(secrets, secret_file):
    info = secrets.status(secret_file)
    assert not info.encrypted
    assert info.recipients == ()

    secrets.encrypt(secret_file, ['age1abc'])
    info = secrets.status(secret_file)
    assert info.encrypted
    assert info.recipients == ('age1abc',)


def test_status_missing_file(secrets, tmp_path):
    with pytest.raises(ObliviateError, match="File does not exist"):
        secrets.status(tmp_path / 'missing.yaml')


def test_contents(secrets, secret_file):
    secrets.encrypt(secret_file, ['age1abc'])
    assert secrets.contents(secret_file) == 'foo: bar\n'


def test_restore(secrets, secret_file):
    secrets.encrypt(secret_file, ['age1abc'])
    result = secrets.restore(secret_file)
    assert secret_file.read_text() == 'foo: bar\n'
    assert result.summary.startswith('Restored secrets.yaml from secrets.yaml-')


def test_restore_without_backups(secrets, secret_file):
    with pytest.raises(ObliviateError):
        secrets.restore(secret_file)
    assert not secrets.locks.held(secret_file)


def test_one_operation_per_file(secrets, secret_file):
    keys = secrets.locks.acquire([secret_file])
    try:
        with pytest.raises(ObliviateError, match="already in progress"):
            secrets.encrypt(secret_file)
        assert secret_file.read_text() == 'foo: bar\n'
    finally:
        secrets.locks.release(keys)

    secrets.encrypt(secret_file)


def test_contents_that_are_not_text(store, tools, secret_file):
    secrets = SecretOperations(store=store, sops=SOPS(executable=tools['binary-sops']))

    with pytest.raises(ObliviateError) as error:
        secrets.contents(secret_file)
    assert error.value.kind == ErrorKind.FILE_OPERATION
    assert error.value.context['path'] == str(secret_file)


def test_binary_output_does_not_undo_mutation(store, tools, secret_file):
    secrets = SecretOperations(store=store, sops=SOPS(executable=tools['binary-sops']))
    assert secrets.rotate(secret_file).changed
    assert len(secrets.backups(secret_file)) == 1


def test_undecodable_diagnostics_are_classified(store, tools, secret_file, monkeypatch):
    secrets = SecretOperations(store=store, sops=SOPS(executable=tools['binary-sops']))
    monkeypatch.setenv('BINARY_SOPS_FAIL', '1')
    secret_file.write_text('ENC[age1abc]\nfoo: bar\n')

    with pytest.raises(ObliviateError) as error:
        secrets.rotate(secret_file)
    assert error.value.kind == ErrorKind.SECURITY
    assert secret_file.read_text() == 'ENC[age1abc]\nfoo: bar\n'
