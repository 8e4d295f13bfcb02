"""
Tests for per-member serialization of balance changes
"""

import threading

import pytest
from decimal import Decimal

from sacco_ledger.config import SaccoConfig
from sacco_ledger.coordinator import AccountCoordinator
from sacco_ledger.currency import Currency, Money
from sacco_ledger.engine import SaccoEngine
from sacco_ledger.errors import ConflictError, InsufficientFunds, PersistenceError, ValidationError
from sacco_ledger.ids import FixedClock, SequentialIdGenerator
from sacco_ledger.loans import LoanStatus
from sacco_ledger.storage import InMemoryStorage, SQLiteStorage


def ugx(amount):
    return Money(Decimal(amount), Currency.UGX)


class TestAccountCoordinator:
    """Test critical sections and after-commit callbacks"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.coordinator = AccountCoordinator(self.storage, lock_timeout_seconds=0.1)

    def test_section_commits_writes(self):
        with self.coordinator.exclusive("mem-1"):
            self.storage.save("members", "mem-1", {"id": "mem-1", "balance": "10"})
        assert self.storage.load("members", "mem-1")["balance"] == "10"

    def test_exception_rolls_back(self):
        with pytest.raises(RuntimeError):
            with self.coordinator.exclusive("mem-1"):
                self.storage.save("members", "mem-1", {"id": "mem-1"})
                raise RuntimeError("boom")
        assert self.storage.load("members", "mem-1") is None

    def test_callbacks_run_after_commit_and_release(self):
        seen = []

        def callback():
            seen.append((self.storage.load("members", "mem-1"), self.coordinator.in_section))

        with self.coordinator.exclusive("mem-1"):
            self.storage.save("members", "mem-1", {"id": "mem-1"})
            self.coordinator.after_commit(callback)
            assert seen == []

        assert seen == [({"id": "mem-1"}, False)]

    def test_callbacks_of_failed_section_are_dropped(self):
        seen = []
        with pytest.raises(ValueError):
            with self.coordinator.exclusive("mem-1"):
                self.coordinator.after_commit(lambda: seen.append("ran"))
                raise ValueError("rejected")
        assert seen == []

    def test_nested_sections_share_one_commit(self):
        seen = []
        with self.coordinator.exclusive("mem-1"):
            with self.coordinator.exclusive("mem-1"):
                self.coordinator.after_commit(lambda: seen.append("inner"))
            assert seen == []
            self.coordinator.after_commit(lambda: seen.append("outer"))
        assert seen == ["inner", "outer"]

    def test_failed_nested_section_dooms_outer(self):
        seen = []
        with pytest.raises(PersistenceError):
            with self.coordinator.exclusive("mem-1"):
                self.storage.save("members", "mem-1", {"id": "mem-1"})
                self.coordinator.after_commit(lambda: seen.append("outer"))
                with pytest.raises(ValueError):
                    with self.coordinator.exclusive("mem-1"):
                        raise ValueError("inner failure")
        assert self.storage.load("members", "mem-1") is None
        assert seen == []

    def test_callback_outside_section_runs_immediately(self):
        seen = []
        self.coordinator.after_commit(lambda: seen.append("now"))
        assert seen == ["now"]

    def test_failing_callback_does_not_stop_others(self):
        seen = []

        def broken():
            raise RuntimeError("audit sink down")

        with self.coordinator.exclusive("mem-1"):
            self.coordinator.after_commit(broken)
            self.coordinator.after_commit(lambda: seen.append("ran"))
        assert seen == ["ran"]

    def test_lock_timeout_raises_conflict(self):
        holding = threading.Event()
        release = threading.Event()

        def hold():
            with self.coordinator.exclusive("mem-1"):
                holding.set()
                release.wait(5)

        worker = threading.Thread(target=hold)
        worker.start()
        try:
            assert holding.wait(5)
            with pytest.raises(ConflictError):
                with self.coordinator.exclusive("mem-1"):
                    pass
        finally:
            release.set()
            worker.join(5)

    def test_other_members_are_not_blocked(self):
        holding = threading.Event()
        release = threading.Event()

        def hold():
            with self.coordinator.exclusive("mem-1"):
                holding.set()
                release.wait(5)

        worker = threading.Thread(target=hold)
        worker.start()
        try:
            assert holding.wait(5)
            with self.coordinator.exclusive("mem-2"):
                self.storage.save("members", "mem-2", {"id": "mem-2"})
        finally:
            release.set()
            worker.join(5)
        assert self.storage.load("members", "mem-2") == {"id": "mem-2"}


@pytest.fixture(params=["memory", "sqlite"])
def engine(request):
    storage = InMemoryStorage() if request.param == "memory" else SQLiteStorage(":memory:")
    engine = SaccoEngine(
        config=SaccoConfig(database_url="memory://"),
        storage=storage,
        id_generator=SequentialIdGenerator(),
        clock=FixedClock()
    )
    yield engine
    engine.close()


def run_concurrently(target, args_list):
    """Start all calls together and collect (result, error) per call"""
    barrier = threading.Barrier(len(args_list))
    outcomes = [None] * len(args_list)

    def worker(index, args):
        barrier.wait()
        try:
            outcomes[index] = (target(*args), None)
        except Exception as e:
            outcomes[index] = (None, e)

    threads = [threading.Thread(target=worker, args=(i, args)) for i, args in enumerate(args_list)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)
    return outcomes


class TestConcurrentCommands:
    """Concurrent commands on one member never lose or double-count money"""

    def test_competing_loan_payments(self, engine):
        """Two payments totalling more than the remaining balance"""
        member = engine.register_member("Grace", "Nakato")
        engine.deposit(member.id, 200000)
        loan = engine.apply_for_loan(member.id, 100000, "Stock", 12, interest_rate_percent=Decimal("1"))
        engine.approve_loan(loan.id, "officer-1")
        engine.activate_loan(loan.id, "officer-1")

        outcomes = run_concurrently(engine.record_loan_payment, [(loan.id, 70000), (loan.id, 70000)])

        errors = [error for _, error in outcomes if error is not None]
        assert len(errors) == 1
        assert isinstance(errors[0], ValidationError)

        stored = engine.get_loan(loan.id)
        assert len(stored.payment_history) == 1
        assert stored.total_paid_amount == ugx(70000)
        assert stored.remaining_balance == ugx(42000)
        assert stored.status == LoanStatus.ACTIVE
        assert engine.get_balance(member.id) == ugx(130000)

    def test_competing_withdrawals(self, engine):
        member = engine.register_member("Grace", "Nakato")
        engine.deposit(member.id, 10000)

        outcomes = run_concurrently(engine.withdraw, [(member.id, 6000)] * 3)

        errors = [error for _, error in outcomes if error is not None]
        assert len(errors) == 2
        assert all(isinstance(error, InsufficientFunds) for error in errors)
        assert engine.get_balance(member.id) == ugx(4000)

    def test_concurrent_deposits_all_count(self, engine):
        member = engine.register_member("Grace", "Nakato")

        outcomes = run_concurrently(engine.deposit, [(member.id, 1000)] * 8)

        assert all(error is None for _, error in outcomes)
        assert engine.get_balance(member.id) == ugx(8000)
        references = {t.reference for t in engine.get_transactions(member.id)}
        assert len(references) == 8
