"""
Connection instance lifecycle for accounts.

Each account owns at most one gateway instance. The instance moves through
these phases:

    NONE -> CREATING -> PAIRING -> OPEN <-> CLOSE -> NONE

PAIRING is any non-open status while a QR or pairing code is on file.
OPEN and CLOSE cycle: a dropped connection reports close, and the next
refresh fetches a fresh QR. Disconnect always lands in NONE locally,
whatever the gateway answered.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wa_inbox.gateway import EvolutionClient, GatewayError, SendResult, SendTextRequest
from wa_inbox.storage import (
    clear_instance_state,
    find_account_by_instance_name,
    get_account,
    update_instance_state,
)
from wa_inbox.utils import normalize_recipient

logger = logging.getLogger(__name__)


class InstanceStatus(str, enum.Enum):
    CREATING = "CREATING"
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    CLOSE = "CLOSE"
    UNKNOWN = "UNKNOWN"


class InstancePhase(str, enum.Enum):
    NONE = "NONE"
    CREATING = "CREATING"
    PAIRING = "PAIRING"
    OPEN = "OPEN"
    CLOSE = "CLOSE"
    UNKNOWN = "UNKNOWN"


class InstanceError(Exception):
    """Base exception for instance lifecycle errors."""

    pass


class AccountNotFound(InstanceError):
    pass


class InstanceAlreadyProvisioned(InstanceError):
    pass


class InstanceNameTaken(InstanceError):
    pass


class NoInstance(InstanceError):
    pass


def normalize_status(raw: Optional[str]) -> Optional[str]:
    """
    Map a gateway state string onto InstanceStatus.

    Recognized values come back as the enum value; anything else is kept
    verbatim so an unexpected gateway status is still visible.
    """
    if raw is None:
        return None
    try:
        return InstanceStatus(raw.upper()).value
    except ValueError:
        return raw


def phase_of(account) -> InstancePhase:
    if account.instance_name is None:
        return InstancePhase.NONE
    status = account.instance_status
    if status == InstanceStatus.CREATING.value:
        return InstancePhase.CREATING
    if status == InstanceStatus.OPEN.value:
        return InstancePhase.OPEN
    if status == InstanceStatus.CLOSE.value:
        return InstancePhase.CLOSE
    # connecting means the gateway is waiting for the phone to pair
    if status == InstanceStatus.CONNECTING.value or account.instance_qr or account.pairing_code:
        return InstancePhase.PAIRING
    return InstancePhase.UNKNOWN


@dataclass
class InstanceState:
    account_id: str
    instance_name: Optional[str]
    status: Optional[str]
    qr_image: Optional[str]
    pairing_code: Optional[str]
    phase: InstancePhase

    @classmethod
    def from_account(cls, account) -> "InstanceState":
        return cls(
            account_id=account.id,
            instance_name=account.instance_name,
            status=account.instance_status,
            qr_image=account.instance_qr,
            pairing_code=account.pairing_code,
            phase=phase_of(account),
        )


class InstanceService:
    """Applies lifecycle transitions for one account's instance and persists them."""

    def __init__(
        self,
        db: Session,
        client: EvolutionClient,
        callback_url: str,
        webhook_secret: str = "",
    ) -> None:
        self.db = db
        self.client = client
        self.callback_url = callback_url
        self.webhook_secret = webhook_secret

    def _account(self, account_id: str):
        account = get_account(self.db, account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    def _account_with_instance(self, account_id: str):
        account = self._account(account_id)
        if not account.instance_name:
            raise NoInstance("No instance found")
        return account

    def _store_status(self, account, status: Optional[str], **artifacts):
        # A stale QR must never survive into OPEN
        if status == InstanceStatus.OPEN.value:
            artifacts = {"instance_qr": None, "pairing_code": None}
        return update_instance_state(self.db, account, instance_status=status, **artifacts)

    def get_state(self, account_id: str) -> InstanceState:
        return InstanceState.from_account(self._account(account_id))

    def create(self, account_id: str, instance_name: str) -> InstanceState:
        account = self._account(account_id)

        if account.instance_name:
            raise InstanceAlreadyProvisioned("You already have an instance. Disconnect it first.")
        if find_account_by_instance_name(self.db, instance_name) is not None:
            raise InstanceNameTaken("Instance name already taken")

        # Claim the name before talking to the gateway; the unique
        # constraint settles concurrent claims.
        try:
            update_instance_state(
                self.db,
                account,
                instance_name=instance_name,
                instance_status=InstanceStatus.CREATING.value,
            )
        except IntegrityError as exc:
            raise InstanceNameTaken("Instance name already taken") from exc

        try:
            result = self.client.create(instance_name)
        except GatewayError:
            logger.error(f"Gateway refused instance {instance_name}; releasing name")
            clear_instance_state(self.db, account)
            raise

        status = normalize_status(result.status)
        if result.qr is not None:
            account = self._store_status(
                account,
                status,
                instance_qr=result.qr.image,
                pairing_code=result.qr.pairing_code,
            )
        else:
            account = self._store_status(account, status)
        logger.info(
            "Instance created",
            extra={"account_id": account.id, "instance": instance_name, "instance_status": status},
        )

        headers = {"X-Webhook-Secret": self.webhook_secret} if self.webhook_secret else None
        try:
            self.client.set_webhook(instance_name, self.callback_url, headers=headers)
            logger.info(f"Webhook configured for {instance_name}: {self.callback_url}")
        except GatewayError as exc:
            # Instance still works, it just won't push messages until fixed
            logger.warning(f"Failed to set webhook for {instance_name}: {exc.message}")

        return InstanceState.from_account(account)

    def refresh(self, account_id: str) -> InstanceState:
        account = self._account_with_instance(account_id)
        instance_name = account.instance_name

        try:
            state = self.client.connection_state(instance_name).state
        except GatewayError as exc:
            logger.warning(f"Failed to get state of {instance_name}: {exc.message}")
            account = self._store_status(account, InstanceStatus.UNKNOWN.value)
            return InstanceState.from_account(account)

        status = normalize_status(state)
        if status == InstanceStatus.CLOSE.value:
            try:
                qr = self.client.fetch_qr(instance_name)
            except GatewayError as exc:
                logger.warning(f"Failed to fetch QR for {instance_name}: {exc.message}")
                account = self._store_status(account, status)
            else:
                account = self._store_status(
                    account, status, instance_qr=qr.image, pairing_code=qr.code
                )
        else:
            account = self._store_status(account, status)

        logger.info(
            "Instance refreshed",
            extra={"account_id": account.id, "instance": instance_name, "instance_status": status},
        )
        return InstanceState.from_account(account)

    def disconnect(self, account_id: str) -> InstanceState:
        account = self._account_with_instance(account_id)
        instance_name = account.instance_name

        try:
            self.client.logout(instance_name)
        except GatewayError as exc:
            logger.warning(f"Failed to logout {instance_name}: {exc.message}")

        try:
            self.client.delete(instance_name)
        except GatewayError as exc:
            logger.warning(f"Failed to delete {instance_name}: {exc.message}")

        account = clear_instance_state(self.db, account)
        logger.info(
            "Instance disconnected",
            extra={"account_id": account.id, "instance": instance_name},
        )
        return InstanceState.from_account(account)

    def send_message(self, account_id: str, to: str, text: str) -> SendResult:
        account = self._account_with_instance(account_id)
        request = SendTextRequest(to=normalize_recipient(to), text=text)
        return self.client.send_message(account.instance_name, request)
