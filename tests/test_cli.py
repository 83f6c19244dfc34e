import json

import obliviate


def test_version(invoke):
    result = invoke(['--version'])
    assert result.exit_code == 0
    assert obliviate.__version__ in result.output


def test_quit(invoke):
    result = invoke([], input='q\n')
    assert result.exit_code == 0
    assert 'Key Status: Not Decrypted' in result.output
    assert 'No encrypted key found.' in result.output


def test_invalid_config(invoke, config_file):
    config_file.write_text('{not json')
    result = invoke([], input='q\n')
    assert result.exit_code != 0
    assert 'Failed to parse config file' in result.output


def test_generate_key(invoke, config):
    result = invoke([], input='g\ncorrect-horse\ncorrect-horse\nq\ny\n')
    assert result.exit_code == 0
    assert 'Generated key age1' in result.output
    assert config.encrypted_key_path.exists()
    assert not config.key_path.exists()


def test_generate_key_mismatch(invoke, config):
    result = invoke([], input='g\ncorrect-horse\ncorrect-hose\ncorrect-horse\nq\nn\n')
    assert result.exit_code == 0
    assert 'Passphrases do not match' in result.output
    assert config.key_path.exists()


def test_decrypt_key(invoke, keys, config):
    keys.create_key('correct-horse')
    keys.delete_decrypted_key()

    result = invoke([], input='d\nwrong\nd\ncorrect-horse\nq\nn\n')
    assert result.exit_code == 0
    assert 'Incorrect passphrase provided' in result.output
    assert f'Decrypted key to {config.key_path}' in result.output
    assert 'Key Status: Decrypted' in result.output
    assert config.key_path.exists()


def test_encrypt(invoke, secret_file):
    result = invoke([], input=f'e\n{secret_file.name}\nage1abc\nq\n')
    assert result.exit_code == 0
    assert 'Encrypted secrets.yaml' in result.output
    assert secret_file.read_text().startswith('ENC[age1abc]')


def test_decrypt_to_file(invoke, secrets, secret_file, tmp_path):
    secrets.encrypt(secret_file, ['age1abc'])
    result = invoke([], input=f'u\n{secret_file.name}\nn\nplain.yaml\nq\n')
    assert result.exit_code == 0
    assert (tmp_path / 'plain.yaml').read_text() == 'foo: bar\n'


def test_missing_file(invoke):
    result = invoke([], input='v\nmissing.yaml\nq\n')
    assert result.exit_code == 0
    assert 'File does not exist' in result.output


def test_restore(invoke, secrets, secret_file):
    secrets.encrypt(secret_file, ['age1abc'])
    result = invoke([], input=f'b\n{secret_file.name}\ny\nq\n')
    assert result.exit_code == 0
    assert secret_file.read_text() == 'foo: bar\n'


def test_view_binary_secret(invoke, tools, tmp_path):
    (tmp_path / 'blob.bin').write_bytes(b'\x00\x01')
    result = invoke(['--sops', tools['binary-sops']], input='v\nblob.bin\nq\n')
    assert result.exit_code == 0
    assert 'sops output is not UTF-8 text' in result.output


def test_settings_reject_zero_interval(invoke, config_file):
    result = invoke([], input='c\ny\n0s\n5m\n\ndefault\nq\n')
    assert result.exit_code == 0
    assert 'The interval must be positive' in result.output
    assert json.loads(config_file.read_text())['auto_delete_interval'] == '5m0s'

    assert invoke([], input='q\n').exit_code == 0
