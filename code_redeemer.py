import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests

from instance_catalog import find_instance
from unlock_ledger import UNLOCK_RECORD, InstanceAccess, decode_ledger, grant_user


ALREADY_GRANTED_MESSAGE = "Ya tienes acceso a esta instancia"


class RedeemStatus(Enum):
    GRANTED = "granted"
    ALREADY_GRANTED = "already_granted"
    INVALID = "invalid"
    CONNECTION_FAILED = "connection_failed"


@dataclass(frozen=True)
class RedeemOutcome:
    status: RedeemStatus
    instance_name: Optional[str] = None


class CodeRedeemer:
    """Обмен кода на доступ к инстансу через сервер проверки кодов."""

    def __init__(self, access: InstanceAccess, validate_url: str, timeout: float = 10.0, session=None):
        self.access = access
        self.validate_url = validate_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, code: str, identity_name: str) -> Optional[dict]:
        """POST на сервер. None при ошибке соединения или некорректном ответе."""
        try:
            response = self.session.post(
                self.validate_url,
                json={"codigo": code, "usuario": identity_name},
                timeout=self.timeout,
            )
            data = response.json()
        except requests.RequestException as e:
            logging.error(f"Ошибка запроса проверки кода: {e}")
            return None
        except ValueError as e:
            logging.error(f"Некорректный ответ сервера проверки кода: {e}")
            return None
        if not isinstance(data, dict):
            logging.error(f"Некорректный ответ сервера проверки кода: {data!r}")
            return None
        logging.info(f"Ответ сервера проверки кода: {data}")
        return data

    def redeem(self, code: str, identity_name: str) -> RedeemOutcome:
        code = (code or "").strip()
        if not code:
            return RedeemOutcome(RedeemStatus.INVALID)

        data = self._request(code, identity_name)
        if data is None:
            return RedeemOutcome(RedeemStatus.CONNECTION_FAILED)

        instance_name = data.get("instanceName") or data.get("instance")
        instance_name = str(instance_name) if instance_name else None
        if data.get("status") == "success":
            if not instance_name:
                logging.error("Сервер подтвердил код, но не вернул имя инстанса")
                return RedeemOutcome(RedeemStatus.CONNECTION_FAILED)
            self._grant(instance_name, identity_name, code)
            return RedeemOutcome(RedeemStatus.GRANTED, instance_name)
        if data.get("status") == "error" and data.get("message") == ALREADY_GRANTED_MESSAGE:
            logging.info(f"У {identity_name} уже есть доступ к инстансу {instance_name}")
            return RedeemOutcome(RedeemStatus.ALREADY_GRANTED, instance_name)
        logging.warning(f"Код отклонён сервером: {data.get('message')}")
        return RedeemOutcome(RedeemStatus.INVALID)

    def _instance_code(self, instance_name: str, submitted_code: str) -> Optional[str]:
        """Код, который сохраняется вместе с разблокировкой.

        Каталог может ещё не знать об инстансе (кэш не истёк или сервер недоступен),
        тогда он обновляется принудительно. Если инстанса нет и после обновления,
        сохраняется код, принятый сервером.
        """
        instance = find_instance(self.access.catalog.get_instance_list(), instance_name)
        if instance is None:
            logging.info(f"Инстанс {instance_name} не найден в кэше каталога, обновляем")
            instance = find_instance(self.access.catalog.force_update(), instance_name)
        if instance is None:
            logging.warning(f"Инстанс {instance_name} не найден в каталоге, сохраняется введённый код")
            return submitted_code
        return instance.password or None

    def _grant(self, instance_name: str, identity_name: str, submitted_code: str) -> None:
        """Записывает пользователя в журнал. StorageUnavailable пробрасывается вызывающему."""
        code = self._instance_code(instance_name, submitted_code)
        with self.access.store.lock(UNLOCK_RECORD):
            # читаем без деградации к пустому журналу, иначе запись затрёт чужие разблокировки
            current = decode_ledger(self.access.store.read(UNLOCK_RECORD))
            ledger, added = grant_user(current, instance_name, identity_name, code)
            self.access.write_ledger(ledger)
        if added:
            logging.info(f"Пользователь {identity_name} добавлен к инстансу {instance_name}")
        else:
            logging.info(f"Пользователь {identity_name} уже был записан у инстанса {instance_name}")
