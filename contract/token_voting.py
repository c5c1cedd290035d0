"""
Token Voting Engine

Sale & Supply Manager:
  setup, purchase, tokens_sold, sweep

Vote Accounting Engine:
  is_valid_candidate, candidate_index, total_tally, cast_vote,
  voter_details, all_candidates, all_tallies, check_invariants

Every function takes the VotingState it works on. All validation happens
before the first write, so a raised error never leaves a partial update
behind. The host additionally discards the loaded state on any error.

Purchase policy: a participant's allocations accumulate across purchases.
"""

from typing import Callable

from voting_errors import (
    AlreadyInitialized,
    InsufficientBudget,
    InsufficientSupply,
    InvalidAmount,
    InvalidCandidate,
    InvalidSetup,
    InvariantViolation,
    NotInitialized,
    TransferFailure,
)
from voting_state import U128_MAX, CandidateRegistry, Participant, SaleState, VotingState


def _require_initialized(state: VotingState):
    if not state.initialized:
        raise NotInitialized("Voting has not been set up yet")


def _require_u128(value, name: str) -> int:
    # bool is an int subclass; True is not a token amount
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"{name} must be an integer, got {value!r}")
    if value < 0 or value > U128_MAX:
        raise InvalidAmount(f"{name} out of range: {value}")
    return value


def _participant(state: VotingState, identity: str) -> Participant:
    """Return the participant record, creating a zeroed one if absent."""
    participant = state.participants.get(identity)
    if participant is None:
        participant = Participant.empty(len(state.registry))
        state.participants[identity] = participant
    return participant


# ---------------------------------------------------------------------------
# Sale & Supply Manager
# ---------------------------------------------------------------------------

def setup(state: VotingState, total_tokens: int, price_per_token: int, candidate_names: list):
    """Register the candidates and open the token sale. Runs exactly once."""
    if state.initialized:
        raise AlreadyInitialized("Voting has already been set up")

    _require_u128(total_tokens, "total_tokens")
    _require_u128(price_per_token, "price_per_token")
    if price_per_token == 0:
        raise InvalidSetup("price_per_token must be positive")

    if not isinstance(candidate_names, (list, tuple)):
        raise InvalidSetup("candidate_names must be a list of names")
    names = list(candidate_names)
    if not names:
        raise InvalidSetup("At least one candidate is required")
    for name in names:
        if not isinstance(name, str) or not name:
            raise InvalidSetup(f"Invalid candidate name: {name!r}")
    if len(set(names)) != len(names):
        raise InvalidSetup("Candidate names must be unique")

    state.registry = CandidateRegistry(names)
    state.sale = SaleState(
        total_tokens=total_tokens,
        balance_tokens=total_tokens,
        token_price=price_per_token,
    )


def purchase(state: VotingState, caller: str, payment_value: int) -> int:
    """
    Convert an already-escrowed payment into tokens for ``caller``.

    Returns the number of tokens allocated. Any remainder of the payment
    below one token price stays with the contract.
    """
    _require_initialized(state)
    _require_u128(payment_value, "payment_value")

    sale = state.sale
    tokens_to_buy = payment_value // sale.token_price
    if tokens_to_buy > sale.balance_tokens:
        raise InsufficientSupply(
            f"Requested {tokens_to_buy} tokens but only {sale.balance_tokens} remain"
        )

    participant = _participant(state, caller)
    participant.tokens_bought += tokens_to_buy
    sale.balance_tokens -= tokens_to_buy
    return tokens_to_buy


def tokens_sold(state: VotingState) -> int:
    _require_initialized(state)
    return state.sale.total_tokens - state.sale.balance_tokens


def sweep(state: VotingState, destination: str, transfer: Callable[[str, int], bool]):
    """Send ``balance_tokens`` worth of value to ``destination`` via the host."""
    _require_initialized(state)
    amount = state.sale.balance_tokens
    if not transfer(destination, amount):
        raise TransferFailure(f"Transfer of {amount} to {destination} failed")


# ---------------------------------------------------------------------------
# Vote Accounting Engine
# ---------------------------------------------------------------------------

def is_valid_candidate(state: VotingState, name: str) -> bool:
    _require_initialized(state)
    return name in state.registry


def candidate_index(state: VotingState, name: str) -> int:
    _require_initialized(state)
    index = state.registry.position(name)
    if index is None:
        raise InvalidCandidate(f"Not a valid candidate: {name!r}")
    return index


def total_tally(state: VotingState, name: str) -> int:
    candidate_index(state, name)
    return state.tallies.get(name, 0)


def all_tallies(state: VotingState) -> dict:
    _require_initialized(state)
    return {name: state.tallies.get(name, 0) for name in state.registry.names}


def cast_vote(state: VotingState, caller: str, candidate: str, amount: int):
    """Spend ``amount`` of the caller's remaining budget on ``candidate``."""
    index = candidate_index(state, candidate)
    _require_u128(amount, "amount")

    existing = state.participants.get(caller)
    participant = existing if existing is not None else Participant.empty(len(state.registry))
    if len(participant.spend_per_candidate) != len(state.registry):
        raise InvariantViolation(f"Spend vector of {caller} is not aligned with the registry")

    available = participant.tokens_bought - participant.tokens_spent
    if available < 0:
        raise InvariantViolation(
            f"{caller} has spent {participant.tokens_spent} of {participant.tokens_bought} tokens"
        )
    if amount > available:
        raise InsufficientBudget(f"Vote of {amount} exceeds remaining budget of {available}")

    # Both writes below happen together or not at all.
    if existing is None:
        state.participants[caller] = participant
    participant.spend_per_candidate[index] += amount
    state.tallies[candidate] = state.tallies.get(candidate, 0) + amount


def voter_details(state: VotingState, identity: str) -> tuple:
    _require_initialized(state)
    participant = state.participants.get(identity)
    if participant is None:
        return 0, [0] * len(state.registry)
    return participant.tokens_bought, list(participant.spend_per_candidate)


def all_candidates(state: VotingState) -> list:
    _require_initialized(state)
    return list(state.registry.names)


def check_invariants(state: VotingState):
    """Raise InvariantViolation if the ledger is inconsistent in any way."""
    if not state.initialized:
        if state.participants or state.tallies:
            raise InvariantViolation("Ledger records exist before setup")
        return

    sale = state.sale
    if not 0 <= sale.balance_tokens <= sale.total_tokens:
        raise InvariantViolation(
            f"balance_tokens {sale.balance_tokens} outside [0, {sale.total_tokens}]"
        )
    if sale.token_price <= 0:
        raise InvariantViolation("token_price must be positive")

    width = len(state.registry)
    sums = [0] * width
    bought = 0
    for identity, participant in state.participants.items():
        if len(participant.spend_per_candidate) != width:
            raise InvariantViolation(f"Spend vector of {identity} is not aligned with the registry")
        if any(spent < 0 for spent in participant.spend_per_candidate):
            raise InvariantViolation(f"Negative spend recorded for {identity}")
        if participant.tokens_spent > participant.tokens_bought:
            raise InvariantViolation(f"{identity} spent more tokens than they bought")
        bought += participant.tokens_bought
        for i, spent in enumerate(participant.spend_per_candidate):
            sums[i] += spent

    if bought != sale.total_tokens - sale.balance_tokens:
        raise InvariantViolation(f"Participants hold {bought} tokens but {tokens_sold(state)} were sold")

    for name in state.tallies:
        if name not in state.registry:
            raise InvariantViolation(f"Tally recorded for unknown candidate {name!r}")
    for i, name in enumerate(state.registry.names):
        if state.tallies.get(name, 0) != sums[i]:
            raise InvariantViolation(
                f"Tally for {name!r} is {state.tallies.get(name, 0)}, ledger says {sums[i]}"
            )
