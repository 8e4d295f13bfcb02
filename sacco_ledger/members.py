"""
Member Management Module

Member records of the cooperative. A member record embeds the member's
savings account (``savings_balance``) and the running total of approved
loan principal still owed (``loan_balance``).
"""

import logging
import threading
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .coordinator import AccountCoordinator
from .errors import ConflictError, NotFound, ValidationError
from .events import DomainEvent, EventDispatcher, create_member_event
from .ids import Clock, IdGenerator, SystemClock, UuidIdGenerator
from .logging_config import log_action


class MemberStatus(Enum):
    """Membership status"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


@dataclass
class Member(StorageRecord):
    """
    Cooperative member with embedded savings account
    """
    member_number: str
    first_name: str
    last_name: str
    savings_balance: Money
    loan_balance: Money
    status: MemberStatus = MemberStatus.ACTIVE
    loan_privilege_suspended_until: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def currency(self) -> Currency:
        return self.savings_balance.currency

    @property
    def is_active(self) -> bool:
        return self.status == MemberStatus.ACTIVE

    def loan_privilege_suspended(self, at: datetime) -> bool:
        """Whether borrowing is suspended at the given instant"""
        return (
            self.loan_privilege_suspended_until is not None
            and at < self.loan_privilege_suspended_until
        )


class MemberRegistry:
    """
    Manages member records
    """

    def __init__(
        self,
        storage: StorageInterface,
        coordinator: AccountCoordinator,
        currency: Currency = Currency.UGX,
        audit_trail: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None,
        id_generator: Optional[IdGenerator] = None,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.coordinator = coordinator
        self.currency = currency
        self.audit_trail = audit_trail
        self.events = events
        self.id_generator = id_generator or UuidIdGenerator()
        self.clock = clock or SystemClock()
        self.table_name = "members"
        self.logger = logging.getLogger("sacco.members")
        self._number_lock = threading.Lock()

    def register_member(
        self,
        first_name: str,
        last_name: str,
        member_number: Optional[str] = None
    ) -> Member:
        """
        Register a new member with zero balances

        Args:
            first_name: Member's first name
            last_name: Member's last name
            member_number: Cooperative membership number; allocated when omitted

        Returns:
            Created Member

        Raises:
            ValidationError: If a name is blank
            ConflictError: If the member number is already taken
        """
        first_name = (first_name or "").strip()
        last_name = (last_name or "").strip()
        if not first_name or not last_name:
            raise ValidationError("First name and last name are required")

        with self._number_lock:
            if member_number is None:
                member_number = f"MEM{self.storage.count(self.table_name) + 1:06d}"
                while self.find_by_number(member_number):
                    member_number = f"MEM{int(member_number[3:]) + 1:06d}"
            elif self.find_by_number(member_number):
                raise ConflictError(f"Member number {member_number} is already registered")

            now = self.clock.now()
            member = Member(
                id=self.id_generator.next_id("mem"),
                created_at=now,
                updated_at=now,
                member_number=member_number,
                first_name=first_name,
                last_name=last_name,
                savings_balance=Money.zero(self.currency),
                loan_balance=Money.zero(self.currency)
            )

            with self.coordinator.exclusive(member.id):
                self.update_member(member)
                self.coordinator.after_commit(lambda: self._registered(member))

        return member

    def _registered(self, member: Member) -> None:
        log_action(self.logger, "info", f"Registered member {member.member_number}",
                   member_id=member.id, action="register_member", resource=member.id)
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.MEMBER_REGISTERED,
                entity_type="member",
                entity_id=member.id,
                metadata={
                    "member_number": member.member_number,
                    "full_name": member.full_name
                }
            )
        if self.events:
            self.events.publish(create_member_event(DomainEvent.MEMBER_REGISTERED, member))

    def get_member(self, member_id: str) -> Optional[Member]:
        """Get member by ID"""
        member_dict = self.storage.load(self.table_name, member_id)
        if member_dict:
            return self._member_from_dict(member_dict)
        return None

    def require_member(self, member_id: str) -> Member:
        """Get member by ID or raise NotFound"""
        member = self.get_member(member_id)
        if member is None:
            raise NotFound(f"Member {member_id} not found")
        return member

    def find_by_number(self, member_number: str) -> Optional[Member]:
        """Get member by membership number"""
        members = self.storage.find(self.table_name, {"member_number": member_number})
        if members:
            return self._member_from_dict(members[0])
        return None

    def list_members(self, status: Optional[MemberStatus] = None) -> List[Member]:
        """List members, optionally filtered by status"""
        if status is None:
            rows = self.storage.load_all(self.table_name)
        else:
            rows = self.storage.find(self.table_name, {"status": status.value})
        return [self._member_from_dict(row) for row in rows]

    def set_status(self, member_id: str, status: MemberStatus) -> Member:
        """Change a member's status"""
        with self.coordinator.exclusive(member_id):
            member = self.require_member(member_id)
            member.status = status
            member.updated_at = self.clock.now()
            self.update_member(member)
        log_action(self.logger, "info", f"Member status set to {status.value}",
                   member_id=member_id, action="set_member_status", resource=member_id)
        return member

    def update_member(self, member: Member) -> None:
        """Persist a member record; callers hold the member's critical section"""
        self.storage.save(self.table_name, member.id, self._member_to_dict(member))

    def _member_to_dict(self, member: Member) -> Dict:
        """Convert Member to dictionary for storage"""
        return {
            'id': member.id,
            'created_at': member.created_at.isoformat(),
            'updated_at': member.updated_at.isoformat(),
            'member_number': member.member_number,
            'first_name': member.first_name,
            'last_name': member.last_name,
            'status': member.status.value,
            'savings_balance_amount': str(member.savings_balance.amount),
            'savings_balance_currency': member.savings_balance.currency.code,
            'loan_balance_amount': str(member.loan_balance.amount),
            'loan_balance_currency': member.loan_balance.currency.code,
            'loan_privilege_suspended_until': (
                member.loan_privilege_suspended_until.isoformat()
                if member.loan_privilege_suspended_until else None
            )
        }

    def _member_from_dict(self, data: Dict) -> Member:
        """Convert dictionary to Member"""
        suspended_until = None
        if data.get('loan_privilege_suspended_until'):
            suspended_until = datetime.fromisoformat(data['loan_privilege_suspended_until'])

        return Member(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            member_number=data['member_number'],
            first_name=data['first_name'],
            last_name=data['last_name'],
            status=MemberStatus(data['status']),
            savings_balance=Money(data['savings_balance_amount'], Currency[data['savings_balance_currency']]),
            loan_balance=Money(data['loan_balance_amount'], Currency[data['loan_balance_currency']]),
            loan_privilege_suspended_until=suspended_until
        )
