"""Журнал разблокировок инстансов и фильтр доступа.

Запись ``unlockedInstances`` в хранилище: словарь ``имя инстанса -> запись``.
Записи декодируются в варианты один раз на границе хранилища; дальше вся
логика работает только с вариантами.

    true                          -> Granted (устаревшая форма)
    {"users": [...], "code"?: ..} -> UserSet
    {"code": "..."}               -> PasswordUnlock
    всё остальное                 -> Invalid (считается отсутствующей)
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

from instance_catalog import Instance, InstanceCatalog
from ledger_store import LedgerStore, StorageUnavailable


UNLOCK_RECORD = "unlockedInstances"


@dataclass(frozen=True)
class Granted:
    pass


@dataclass(frozen=True)
class UserSet:
    users: Tuple[str, ...] = ()
    code: Optional[str] = None


@dataclass(frozen=True)
class PasswordUnlock:
    code: str


@dataclass(frozen=True)
class Invalid:
    raw: object = None


UnlockEntry = Union[Granted, UserSet, PasswordUnlock, Invalid]
UnlockLedger = Dict[str, UnlockEntry]


def decode_entry(raw: object) -> UnlockEntry:
    if raw is True:
        return Granted()
    if not isinstance(raw, dict):
        return Invalid(raw)
    code = raw.get("code")
    code = code if isinstance(code, str) and code else None
    users = raw.get("users")
    if isinstance(users, list):
        return UserSet(tuple(u for u in users if isinstance(u, str)), code)
    if code is not None:
        return PasswordUnlock(code)
    return Invalid(raw)


def encode_entry(entry: UnlockEntry) -> object:
    if isinstance(entry, Granted):
        return True
    if isinstance(entry, UserSet):
        doc: Dict[str, object] = {"users": list(entry.users)}
        if entry.code is not None:
            doc["code"] = entry.code
        return doc
    if isinstance(entry, PasswordUnlock):
        return {"code": entry.code}
    return entry.raw


def decode_ledger(document: Optional[Dict[str, object]]) -> UnlockLedger:
    if not document:
        return {}
    # ID: служебное поле хранилища, не инстанс
    return {name: decode_entry(raw) for name, raw in document.items() if name != "ID"}


def encode_ledger(ledger: UnlockLedger) -> Dict[str, object]:
    return {name: encode_entry(entry) for name, entry in ledger.items()}


def entry_code(entry: Optional[UnlockEntry]) -> Optional[str]:
    if isinstance(entry, (UserSet, PasswordUnlock)):
        return entry.code
    return None


def entry_users(entry: Optional[UnlockEntry]) -> Tuple[str, ...]:
    if isinstance(entry, UserSet):
        return entry.users
    return ()


def is_valid(entry: Optional[UnlockEntry]) -> bool:
    return entry is not None and not isinstance(entry, Invalid)


def reconcile(instances: Sequence[Instance], ledger: UnlockLedger) -> Tuple[UnlockLedger, bool]:
    """Удаляет устаревшие разблокировки. Возвращает (очищенный журнал, были ли изменения).

    Записи инстансов, которых нет в каталоге, сохраняются: инстанс может вернуться.
    """
    by_name = {i.name: i for i in instances}
    cleaned = dict(ledger)
    changed = False
    for name, entry in ledger.items():
        instance = by_name.get(name)
        if instance is None:
            continue
        if instance.password:
            saved_code = entry_code(entry)
            if saved_code != instance.password:
                reason = "нет сохранённого кода" if saved_code is None else "код не совпадает"
                logging.info(f"{reason} для \"{name}\": разблокировка снята")
                del cleaned[name]
                changed = True
        elif not (isinstance(entry, UserSet) and entry.code is None):
            # пароль убран: разблокировки по паролю больше не действуют
            logging.info(f"Пароль у \"{name}\" снят: разблокировка снята")
            del cleaned[name]
            changed = True
    return cleaned, changed


def authorize(instances: Sequence[Instance], ledger: UnlockLedger, identity_name: Optional[str] = None) -> List[Instance]:
    """Возвращает видимые для пользователя инстансы в исходном порядке."""
    visible = []
    for instance in instances:
        entry = ledger.get(instance.name)
        if instance.password:
            allowed = is_valid(entry)
        elif instance.whitelist_active:
            allowed = bool(identity_name) and (
                identity_name in instance.whitelist or identity_name in entry_users(entry)
            )
        else:
            allowed = True
        logging.debug(f"Инстанс \"{instance.name}\": доступ={allowed} для {identity_name}")
        if allowed:
            visible.append(instance)
    return visible


def grant_user(ledger: UnlockLedger, instance_name: str, user: str, code: Optional[str] = None) -> Tuple[UnlockLedger, bool]:
    """Добавляет пользователя в запись инстанса. Возвращает (новый журнал, был ли добавлен).

    Запись приводится к виду UserSet; code: текущий пароль инстанса, если он есть.
    """
    users = entry_users(ledger.get(instance_name))
    added = user not in users
    if added:
        users = users + (user,)
    updated = dict(ledger)
    updated[instance_name] = UserSet(users, code)
    return updated, added


class InstanceAccess:
    """Связывает каталог, журнал разблокировок в хранилище и фильтр доступа."""

    def __init__(self, store: LedgerStore, catalog: InstanceCatalog):
        self.store = store
        self.catalog = catalog

    def read_ledger(self) -> UnlockLedger:
        try:
            return decode_ledger(self.store.read(UNLOCK_RECORD))
        except StorageUnavailable as e:
            logging.warning(f"Ошибка чтения разблокированных инстансов: {e}")
            return {}

    def write_ledger(self, ledger: UnlockLedger) -> None:
        self.store.update(UNLOCK_RECORD, encode_ledger(ledger))

    def reconciled_ledger(self, instances: Sequence[Instance]) -> UnlockLedger:
        with self.store.lock(UNLOCK_RECORD):
            ledger, changed = reconcile(instances, self.read_ledger())
            if changed:
                try:
                    self.write_ledger(ledger)
                    logging.info("Устаревшие разблокировки удалены")
                except StorageUnavailable as e:
                    logging.warning(f"Ошибка сохранения разблокировок: {e}")
        return ledger

    def filter_authorized(self, instances: Sequence[Instance], identity_name: Optional[str]) -> List[Instance]:
        ledger = self.reconciled_ledger(instances)
        visible = authorize(instances, ledger, identity_name)
        logging.info(f"Доступно инстансов: {len(visible)} из {len(instances)} для {identity_name}")
        return visible

    def authorized_instances(self, identity_name: Optional[str]) -> List[Instance]:
        return self.filter_authorized(self.catalog.get_instance_list(), identity_name)
