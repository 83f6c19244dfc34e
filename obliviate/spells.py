import pathlib
import typing

import attr

from .age import Age
from .backups import BackupStore
from .config import Config
from .dispatch import Dispatcher, Event
from .keys import KeyLifecycleManager
from .operations import SecretOperations
from .sops import SOPS


@attr.s(frozen=True)
class Session:
    config: Config = attr.ib()
    keys: KeyLifecycleManager = attr.ib()
    secrets: SecretOperations = attr.ib()
    dispatcher: Dispatcher = attr.ib()
    config_file: typing.Optional[pathlib.Path] = attr.ib(default=None)

    def close(self) -> None:
        self.keys.close()
        self.dispatcher.shutdown()


def obliviate(
        config: Config,
        config_file: typing.Optional[pathlib.Path] = None,
        age: typing.Optional[Age] = None,
        sops: typing.Optional[SOPS] = None,
        dispatcher: typing.Optional[Dispatcher] = None) -> Session:
    dispatcher = dispatcher or Dispatcher()
    keys = KeyLifecycleManager(
        key_path=config.key_path,
        encrypted_key_path=config.encrypted_key_path,
        auto_delete_interval=config.auto_delete_interval,
        age=age or Age(),
        on_expire=lambda error: dispatcher.post(Event('expired', error=error)))
    secrets = SecretOperations(
        store=BackupStore(config.backup_dir),
        sops=sops or SOPS(editor=config.editor, age_key_file=config.key_path),
        default_recipients=config.recipients)
    return Session(
        config=config,
        keys=keys,
        secrets=secrets,
        dispatcher=dispatcher,
        config_file=config_file)
