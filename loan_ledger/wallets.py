"""
Wallet Ledger Module

One wallet per owner plus an append-only log of ledger entries. Every balance
change is made by ``apply_movement`` (or ``transfer_movement``), which writes
the new balance and the entry recording it in the same unit of work, so the
invariant ``balance == sum(signed entries)`` holds by construction.
"""

from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple
import threading
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money
from .errors import InsufficientFunds, InvalidAmount, ValidationError, WalletNotFound
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class Direction(Enum):
    """Effect of an entry on the wallet balance"""
    DEBIT = "debit"    # reduces balance
    CREDIT = "credit"  # increases balance


class LedgerCategory(Enum):
    """Closed set of business reasons for a movement"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"
    CASH_PAYOUT = "cash_payout"
    LOAN_DISBURSEMENT = "loan_disbursement"
    LOAN_REPAYMENT = "loan_repayment"
    CONTRIBUTION = "contribution"
    CAPITAL = "capital"
    PROJECT_CONTRIBUTION = "project_contribution"
    PROJECT_COMMISSION = "project_commission"
    PENALTY_ADJUSTMENT = "penalty_adjustment"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class EntryStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Correlation:
    """Loose pointer from a ledger entry to the business event behind it"""
    kind: str           # loan, transfer, installment, ...
    reference_id: str

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.reference_id}"

    @classmethod
    def for_loan(cls, loan_id: str) -> 'Correlation':
        return cls(kind="loan", reference_id=loan_id)


@dataclass
class Wallet(StorageRecord):
    """On-platform wallet holding a member's balance"""
    owner_id: str
    currency: Currency
    balance: Money
    version: int = 0
    is_closed: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Wallet':
        return cls(
            id=data['id'],
            created_at=cls.parse_datetime(data['created_at']),
            updated_at=cls.parse_datetime(data['updated_at']),
            owner_id=data['owner_id'],
            currency=Currency[data['currency']],
            balance=cls.parse_money(data['balance']),
            version=data.get('version', 0),
            is_closed=data.get('is_closed', False)
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result


@dataclass
class LedgerEntry(StorageRecord):
    """
    Immutable record of one balance-affecting movement
    """
    wallet_id: str
    amount: Money
    direction: Direction
    category: LedgerCategory
    balance_before: Money
    balance_after: Money
    correlation: Optional[Correlation] = None
    status: EntryStatus = EntryStatus.CONFIRMED
    created_by: Optional[str] = None
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    reference: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.amount.is_positive():
            raise InvalidAmount("Ledger entry amount must be positive")
        if self.balance_after != self.balance_before + self.signed_amount:
            raise ValueError(
                f"Ledger entry snapshot mismatch: {self.balance_before.to_string()} "
                f"{self.direction.value} {self.amount.to_string()} != {self.balance_after.to_string()}"
            )

    @property
    def signed_amount(self) -> Money:
        return self.amount if self.direction == Direction.CREDIT else -self.amount

    @property
    def correlation_key(self) -> Optional[str]:
        return self.correlation.key if self.correlation else None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['correlation_key'] = self.correlation_key
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        correlation = None
        if data.get('correlation'):
            correlation = Correlation(**data['correlation'])
        return cls(
            id=data['id'],
            created_at=cls.parse_datetime(data['created_at']),
            updated_at=cls.parse_datetime(data['updated_at']),
            wallet_id=data['wallet_id'],
            amount=cls.parse_money(data['amount']),
            direction=Direction(data['direction']),
            category=LedgerCategory(data['category']),
            balance_before=cls.parse_money(data['balance_before']),
            balance_after=cls.parse_money(data['balance_after']),
            correlation=correlation,
            status=EntryStatus(data['status']),
            created_by=data.get('created_by'),
            verified_by=data.get('verified_by'),
            verified_at=cls.parse_datetime(data.get('verified_at')),
            reference=data.get('reference'),
            metadata=data.get('metadata') or {}
        )


class KeyedLocks:
    """
    One re-entrant lock per key, kept only while some thread holds or waits on it
    """

    def __init__(self):
        self._locks: Dict[str, Tuple[threading.RLock, int]] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.RLock()
            self._locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                lock, users = self._locks[key]
                if users == 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)


class WalletLedger(EventPublisherMixin):
    """
    Ledger store: wallets and their append-only ledger entries.

    Movements against one wallet are serialized by a per-wallet lock; the
    balance snapshot is re-read under that lock before each movement.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None,
        default_currency: Currency = Currency.ZAR
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.event_dispatcher = event_dispatcher
        self.default_currency = default_currency
        self.wallets_table = "wallets"
        self.entries_table = "ledger_entries"
        self.logger = get_logger("loan_ledger.wallets")

        self._wallet_locks = KeyedLocks()

    @contextmanager
    def locked(self, *wallet_ids: str) -> Iterator[None]:
        """Hold the locks of the given wallets, always acquired in sorted order"""
        with ExitStack() as stack:
            for wallet_id in sorted(set(wallet_ids)):
                stack.enter_context(self._wallet_locks.hold(wallet_id))
            yield

    # Wallets

    def create_wallet(self, owner_id: str, currency: Optional[Currency] = None,
                      created_by: Optional[str] = None) -> Wallet:
        """
        Create the wallet for an owner

        Raises:
            ValidationError: owner missing or wallet already exists
        """
        if not owner_id:
            raise ValidationError("Owner id is required")
        currency = currency or self.default_currency

        with self.storage.atomic():
            if self.storage.find(self.wallets_table, {'owner_id': owner_id}):
                raise ValidationError(f"Wallet already exists for owner {owner_id}")

            now = datetime.now(timezone.utc)
            wallet = Wallet(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                currency=currency,
                balance=Money.zero(currency)
            )
            self._save_wallet(wallet)

            self.audit_trail.log_event(
                event_type=AuditEventType.WALLET_CREATED,
                entity_type="wallet",
                entity_id=wallet.id,
                metadata={"owner_id": owner_id, "currency": currency.code},
                user_id=created_by
            )

        log_action(
            self.logger, "info", "Wallet created",
            user_id=created_by, action="create_wallet", resource=f"wallet:{wallet.id}",
            extra={"owner_id": owner_id, "currency": currency.code}
        )
        self.publish_event(DomainEvent.WALLET_CREATED, "wallet", wallet.id,
                           {"owner_id": owner_id, "currency": currency.code})
        return wallet

    def get_wallet(self, wallet_id: str) -> Wallet:
        data = self.storage.load(self.wallets_table, wallet_id)
        if not data:
            raise WalletNotFound(f"Wallet {wallet_id} not found")
        return Wallet.from_dict(data)

    def get_wallet_by_owner(self, owner_id: str) -> Wallet:
        found = self.storage.find(self.wallets_table, {'owner_id': owner_id})
        if not found:
            raise WalletNotFound(f"No wallet for owner {owner_id}")
        return Wallet.from_dict(found[0])

    def close_wallet(self, wallet_id: str, closed_by: Optional[str] = None) -> Wallet:
        """Close a wallet; only an empty wallet can be closed"""
        with self.locked(wallet_id), self.storage.atomic():
            wallet = self.get_wallet(wallet_id)
            if not wallet.balance.is_zero():
                raise ValidationError(
                    f"Cannot close wallet with non-zero balance: {wallet.balance.to_string()}"
                )
            wallet.is_closed = True
            wallet.version += 1
            wallet.updated_at = datetime.now(timezone.utc)
            self._save_wallet(wallet)
            self.audit_trail.log_event(
                event_type=AuditEventType.WALLET_CLOSED,
                entity_type="wallet",
                entity_id=wallet.id,
                metadata={"owner_id": wallet.owner_id},
                user_id=closed_by
            )
        return wallet

    # Movements

    def apply_movement(
        self,
        wallet_id: str,
        amount: Money,
        direction: Direction,
        category: LedgerCategory,
        correlation: Optional[Correlation] = None,
        created_by: Optional[str] = None,
        reference: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> LedgerEntry:
        """
        Move money in or out of a wallet and record the ledger entry

        The balance update and the entry are persisted in one unit of work.
        When called inside a caller's ``storage.atomic()`` block the entry is
        not announced here; the caller passes it to ``publish_entry`` once
        its own unit has committed.

        Raises:
            InvalidAmount: amount not positive, finer than the currency's
                minor unit, or in another currency
            WalletNotFound: no such wallet
            InsufficientFunds: DEBIT larger than the current balance
        """
        with self.locked(wallet_id), self.storage.atomic():
            nested = self.storage.transaction_depth > 1
            wallet = self.get_wallet(wallet_id)
            entry = self._record(wallet, amount, direction, category, correlation,
                                 created_by, reference, metadata)

        if not nested:
            self.publish_entry(entry)
        return entry

    def transfer_movement(
        self,
        from_wallet_id: str,
        to_wallet_id: str,
        amount: Money,
        correlation: Optional[Correlation] = None,
        created_by: Optional[str] = None,
        reference: Optional[str] = None
    ) -> Tuple[LedgerEntry, LedgerEntry]:
        """
        Debit one wallet and credit another as a single all-or-nothing unit

        Returns:
            (transfer_out entry, transfer_in entry)
        """
        if from_wallet_id == to_wallet_id:
            raise ValidationError("Cannot transfer to the same wallet")

        with self.locked(from_wallet_id, to_wallet_id), self.storage.atomic():
            nested = self.storage.transaction_depth > 1
            source = self.get_wallet(from_wallet_id)
            destination = self.get_wallet(to_wallet_id)
            if source.currency != destination.currency:
                raise ValidationError("Cannot transfer between different currencies")

            correlation = correlation or Correlation(kind="transfer", reference_id=str(uuid.uuid4()))
            out_entry = self._record(source, amount, Direction.DEBIT, LedgerCategory.TRANSFER_OUT,
                                     correlation, created_by, reference, {"counterparty_wallet": to_wallet_id})
            in_entry = self._record(destination, amount, Direction.CREDIT, LedgerCategory.TRANSFER_IN,
                                    correlation, created_by, reference, {"counterparty_wallet": from_wallet_id})

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_RECORDED,
                entity_type="transfer",
                entity_id=correlation.reference_id,
                metadata={
                    "from_wallet": from_wallet_id,
                    "to_wallet": to_wallet_id,
                    "amount": amount.to_string(),
                    "out_entry_id": out_entry.id,
                    "in_entry_id": in_entry.id
                },
                user_id=created_by
            )

        if not nested:
            self.publish_entry(out_entry)
            self.publish_entry(in_entry)
        return out_entry, in_entry

    def deposit(self, wallet_id: str, amount: Money, reference: Optional[str] = None,
                created_by: Optional[str] = None) -> LedgerEntry:
        return self.apply_movement(wallet_id, amount, Direction.CREDIT, LedgerCategory.DEPOSIT,
                                   created_by=created_by, reference=reference)

    def withdraw(self, wallet_id: str, amount: Money, reference: Optional[str] = None,
                 created_by: Optional[str] = None) -> LedgerEntry:
        return self.apply_movement(wallet_id, amount, Direction.DEBIT, LedgerCategory.WITHDRAWAL,
                                   created_by=created_by, reference=reference)

    # Queries

    def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        data = self.storage.load(self.entries_table, entry_id)
        return LedgerEntry.from_dict(data) if data else None

    def get_entries(self, wallet_id: str) -> List[LedgerEntry]:
        """All entries of a wallet in the order they were recorded"""
        return [LedgerEntry.from_dict(d) for d in self.storage.find(self.entries_table, {'wallet_id': wallet_id})]

    def find_entries_by_correlation(self, correlation: Correlation,
                                    category: Optional[LedgerCategory] = None) -> List[LedgerEntry]:
        filters = {'correlation_key': correlation.key}
        if category:
            filters['category'] = category.value
        return [LedgerEntry.from_dict(d) for d in self.storage.find(self.entries_table, filters)]

    def calculate_balance(self, wallet_id: str) -> Money:
        """Balance derived from confirmed ledger entries"""
        wallet = self.get_wallet(wallet_id)
        balance = Money.zero(wallet.currency)
        for entry in self.get_entries(wallet_id):
            if entry.status == EntryStatus.CONFIRMED:
                balance = balance + entry.signed_amount
        return balance

    def verify_balance(self, wallet_id: str) -> bool:
        """Check the stored balance against the sum of its entries"""
        return self.get_wallet(wallet_id).balance == self.calculate_balance(wallet_id)

    # Internals

    def _record(
        self,
        wallet: Wallet,
        amount: Money,
        direction: Direction,
        category: LedgerCategory,
        correlation: Optional[Correlation],
        created_by: Optional[str],
        reference: Optional[str],
        metadata: Optional[Dict[str, Any]]
    ) -> LedgerEntry:
        """Persist one movement; caller holds the wallet lock and a unit of work"""
        if not isinstance(amount, Money) or not amount.is_positive():
            raise InvalidAmount("Movement amount must be a positive Money value")
        if not amount.exact:
            raise InvalidAmount(f"Movement amount is finer than the {amount.currency.code} minor unit")
        if amount.currency != wallet.currency:
            raise InvalidAmount(
                f"Amount currency {amount.currency.code} does not match wallet currency {wallet.currency.code}"
            )
        if wallet.is_closed:
            raise ValidationError(f"Wallet {wallet.id} is closed")

        balance_before = wallet.balance
        if direction == Direction.DEBIT:
            if balance_before < amount:
                raise InsufficientFunds(
                    f"Insufficient funds in wallet {wallet.id}: balance {balance_before.to_string()}, "
                    f"requested {amount.to_string()}"
                )
            balance_after = balance_before - amount
        else:
            balance_after = balance_before + amount

        now = datetime.now(timezone.utc)
        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            wallet_id=wallet.id,
            amount=amount,
            direction=direction,
            category=category,
            balance_before=balance_before,
            balance_after=balance_after,
            correlation=correlation,
            status=EntryStatus.CONFIRMED,
            created_by=created_by,
            verified_by=created_by,
            verified_at=now,
            reference=reference,
            metadata=metadata or {}
        )

        wallet.balance = balance_after
        wallet.version += 1
        wallet.updated_at = now
        self._save_wallet(wallet)
        self.storage.save(self.entries_table, entry.id, entry.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.LEDGER_ENTRY_RECORDED,
            entity_type="wallet",
            entity_id=wallet.id,
            metadata={
                "entry_id": entry.id,
                "direction": direction.value,
                "category": category.value,
                "amount": amount.to_string(),
                "balance_before": balance_before.to_string(),
                "balance_after": balance_after.to_string(),
                "correlation": entry.correlation_key
            },
            user_id=created_by
        )
        return entry

    def publish_entry(self, entry: LedgerEntry) -> None:
        """Log and publish a committed ledger entry"""
        log_action(
            self.logger, "info", f"Ledger entry recorded: {entry.category.value}",
            user_id=entry.created_by, action="apply_movement", resource=f"wallet:{entry.wallet_id}",
            correlation_id=entry.correlation_key,
            extra={
                "entry_id": entry.id,
                "direction": entry.direction.value,
                "amount": entry.amount.to_string(),
                "balance_after": entry.balance_after.to_string()
            }
        )
        self.publish_event(DomainEvent.LEDGER_ENTRY_RECORDED, "wallet", entry.wallet_id, {
            "entry_id": entry.id,
            "direction": entry.direction.value,
            "category": entry.category.value,
            "amount": str(entry.amount.amount),
            "currency": entry.amount.currency.code,
            "correlation": entry.correlation_key
        })

    def _save_wallet(self, wallet: Wallet) -> None:
        self.storage.save(self.wallets_table, wallet.id, wallet.to_dict())
