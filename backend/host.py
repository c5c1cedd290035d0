"""
Contract Host — the execution environment around the voting engine

Provides what the engine treats as given:
  1. Serialized execution: one call at a time, under a lock and inside a
     single SQLite write transaction
  2. All-or-nothing commits: state is loaded fresh for every call and only
     persisted if the call (and the invariant check after it) succeeds
  3. An authenticated caller identity, derived from a signed envelope
  4. A value-transfer primitive between accounts that reports failure

Committed mutating calls are sealed into the call journal.
"""

import os
import sys
import threading
from pathlib import Path
from typing import Optional

# Ensure sibling directories are importable when run standalone
sys.path.insert(0, str(Path(__file__).parent))
sys.path.insert(0, str(Path(__file__).parent.parent / "contract"))
sys.path.insert(0, str(Path(__file__).parent.parent / "blockchain"))

import token_voting
from accounts import account_id, parse_envelope, verify_call
from database import (
    consume_nonce,
    create_account,
    get_account,
    get_balance,
    get_db,
    init_db,
    set_balance,
    set_public_key,
    storage_insert,
    storage_items,
    storage_remove,
    transaction,
)
from journal import Journal, get_journal
from voting_errors import InsufficientFunds, InvalidAmount, VotingError
from voting_state import VotingState

CONTRACT_ACCOUNT = "contract"
INITIAL_BALANCE = int(os.environ.get("TOKENVOTE_INITIAL_BALANCE", 10000))

# operation -> (required args, payable)
MUTATIONS = {
    "setup": (("total_tokens", "token_price", "candidates"), False),
    "purchase": ((), True),
    "castVote": (("candidate", "amount"), False),
    "sweep": (("destination",), False),
}

QUERIES = {
    "isValidCandidate": ("name",),
    "candidateIndex": ("name",),
    "totalTally": ("name",),
    "allTallies": (),
    "tokensSold": (),
    "saleState": (),
    "voterDetails": ("identity",),
    "allCandidates": (),
}


class InvalidCall(Exception):
    """A call that never reaches the contract: bad envelope, signature or nonce."""

    def __init__(self, message: str, status: int = 400, code: str = "invalid_call"):
        super().__init__(message)
        self.status = status
        self.code = code

    def to_dict(self) -> dict:
        return {"success": False, "error": str(self), "code": self.code}


def transfer_value(conn, source: str, destination: str, amount: int) -> bool:
    """Move ``amount`` between value accounts. False if ``source`` cannot pay."""
    source_balance = get_balance(conn, source)
    if amount > source_balance:
        return False
    if amount == 0 or source == destination:
        return True
    set_balance(conn, source, source_balance - amount)
    set_balance(conn, destination, get_balance(conn, destination) + amount)
    return True


def _check_args(operation: str, args: dict, required: tuple):
    missing = [name for name in required if name not in args]
    if missing:
        raise InvalidCall(f"{operation} requires {', '.join(missing)}")


class ContractHost:
    def __init__(self, journal: Optional[Journal] = None):
        self._lock = threading.Lock()
        self._journal = journal

    @property
    def journal(self) -> Journal:
        return self._journal or get_journal()

    def bootstrap(self):
        """Create tables and the contract's own value account."""
        init_db()
        with get_db() as conn:
            create_account(conn, CONTRACT_ACCOUNT)
        print("[host] Storage ready.")

    # ------------------------------------------------------------------
    # Value accounts
    # ------------------------------------------------------------------

    def open_account(self, public_key_pem: str, balance: Optional[int] = None) -> dict:
        """Register a caller's public key and fund its value account."""
        try:
            new_id = account_id(public_key_pem)
        except (ValueError, IndexError, TypeError) as e:
            raise InvalidCall(f"Invalid public key: {e}") from e

        with self._lock, transaction() as conn:
            existing = get_account(conn, new_id)
            if existing is not None and existing["public_key"] is not None:
                raise InvalidCall("Account already registered", status=409, code="account_exists")
            opening = INITIAL_BALANCE if balance is None else balance
            if existing is None:
                create_account(conn, new_id, public_key_pem, opening)
            else:
                # Value may have been sent here before the key was registered
                set_public_key(conn, new_id, public_key_pem)
                set_balance(conn, new_id, existing["balance"] + opening)
            account = get_account(conn, new_id)

        print(f"[host] Opened account {new_id} with balance {account['balance']}.")
        return account

    def account(self, account_id_: str) -> Optional[dict]:
        with get_db() as conn:
            return get_account(conn, account_id_)

    def balance_of(self, account_id_: str) -> int:
        with get_db() as conn:
            return get_balance(conn, account_id_)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, envelope, operation: str) -> tuple:
        """
        Verify a signed envelope for ``operation``.

        Returns (caller_id, args, value). The nonce is consumed here, before
        the call runs, so a signed call can be submitted at most once.
        """
        try:
            public_key, payload, signature = parse_envelope(envelope)
        except ValueError as e:
            raise InvalidCall(str(e)) from e

        if payload["operation"] != operation:
            raise InvalidCall(f"Envelope is for {payload['operation']!r}, not {operation!r}")
        if not verify_call(payload, signature, public_key):
            raise InvalidCall("Invalid signature, call rejected", status=403, code="bad_signature")

        caller = account_id(public_key)
        with self._lock, transaction() as conn:
            account = get_account(conn, caller)
            if account is None or account["public_key"] is None:
                raise InvalidCall("Unknown account", status=404, code="unknown_account")
            if not consume_nonce(conn, caller, payload["nonce"]):
                raise InvalidCall(
                    f"Bad nonce {payload['nonce']}, expected {account['nonce']}",
                    status=409,
                    code="bad_nonce",
                )
        return caller, payload["args"], payload["value"]

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @staticmethod
    def _load(conn) -> tuple:
        items = storage_items(conn)
        return items, VotingState.from_storage(items)

    @staticmethod
    def _store(conn, before: dict, state: VotingState):
        after = state.to_storage()
        for key in before.keys() - after.keys():
            storage_remove(conn, key)
        for key, value in after.items():
            if before.get(key) != value:
                storage_insert(conn, key, value)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _dispatch(self, conn, state: VotingState, operation: str, caller: str, args: dict, value: int):
        if operation == "setup":
            token_voting.setup(state, args["total_tokens"], args["token_price"], args["candidates"])
            return None
        if operation == "purchase":
            return token_voting.purchase(state, caller, value)
        if operation == "castVote":
            token_voting.cast_vote(state, caller, args["candidate"], args["amount"])
            return None
        if operation == "sweep":
            token_voting.sweep(
                state,
                args["destination"],
                lambda destination, amount: transfer_value(conn, CONTRACT_ACCOUNT, destination, amount),
            )
            return None
        raise InvalidCall(f"Unknown operation {operation!r}")

    def execute(self, operation: str, caller: str, args: Optional[dict] = None, value: int = 0) -> dict:
        """
        Run one mutating call to completion.

        Returns a dict with { success, result, tx_hash, block_index } or
        { success, error, code }.
        """
        if operation not in MUTATIONS:
            raise InvalidCall(f"Unknown operation {operation!r}")
        args = args or {}
        required, payable = MUTATIONS[operation]
        _check_args(operation, args, required)
        if operation == "sweep" and not (isinstance(args["destination"], str) and args["destination"]):
            raise InvalidCall("sweep destination must be an account id")

        with self._lock:
            try:
                with transaction() as conn:
                    if value and not payable:
                        raise InvalidAmount(f"{operation} does not accept a payment")
                    if value and not transfer_value(conn, caller, CONTRACT_ACCOUNT, value):
                        raise InsufficientFunds(f"{caller} cannot pay {value}")

                    before, state = self._load(conn)
                    result = self._dispatch(conn, state, operation, caller, args, value)
                    token_voting.check_invariants(state)
                    self._store(conn, before, state)
            except VotingError as e:
                if e.fatal:
                    print(f"[host] FATAL {operation} by {caller} aborted: {e.code}: {e}")
                else:
                    print(f"[host] Rejected {operation} by {caller}: {e.code}")
                return e.to_dict()

            try:
                receipt = self.journal.record_call(operation, caller, args, value, result)
            except OSError as e:
                # Storage is already committed, so the call stays unjournaled
                print(f"[host] Journal write failed for {operation} by {caller}: {e}")
                return {"success": True, "result": result, "tx_hash": None, "block_index": None}

        print(f"[host] Committed {operation} by {caller} in {receipt['tx_hash'][:16]}")
        return {"success": True, "result": result, **receipt}

    def query(self, operation: str, args: Optional[dict] = None):
        """Run a read-only call. Engine errors propagate to the caller."""
        if operation not in QUERIES:
            raise InvalidCall(f"Unknown query {operation!r}")
        args = args or {}
        _check_args(operation, args, QUERIES[operation])

        with self._lock, get_db() as conn:
            _, state = self._load(conn)

        if operation == "isValidCandidate":
            return token_voting.is_valid_candidate(state, args["name"])
        if operation == "candidateIndex":
            return token_voting.candidate_index(state, args["name"])
        if operation == "totalTally":
            return token_voting.total_tally(state, args["name"])
        if operation == "allTallies":
            return token_voting.all_tallies(state)
        if operation == "tokensSold":
            return token_voting.tokens_sold(state)
        if operation == "saleState":
            return dict(state.sale.to_dict(), tokens_sold=token_voting.tokens_sold(state))
        if operation == "voterDetails":
            return token_voting.voter_details(state, args["identity"])
        return token_voting.all_candidates(state)


# Singleton instance shared across the application
_host_instance: Optional[ContractHost] = None
_host_lock = threading.Lock()


def get_host() -> ContractHost:
    global _host_instance
    if _host_instance is None:
        with _host_lock:
            if _host_instance is None:
                _host_instance = ContractHost()
    return _host_instance
