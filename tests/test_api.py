"""
Integration tests for the Flask API using a test client.
"""

import pytest

import database
import host as host_module
import journal as journal_module
from accounts import account_id, generate_keypair, make_envelope


@pytest.fixture(scope="module")
def app_client(tmp_path_factory):
    """Create a Flask test client with isolated storage and journal."""
    tmp = tmp_path_factory.mktemp("tokenvote_test")

    database.close_connection()
    original_db = database.DB_PATH
    database.DB_PATH = tmp / "test_storage.db"

    original_journal = journal_module.JOURNAL_FILE
    journal_module.JOURNAL_FILE = tmp / "test_journal.json"
    journal_module._journal_instance = None
    host_module._host_instance = None

    import api as api_module
    api_module.initialize()

    api_module.app.config["TESTING"] = True
    with api_module.app.test_client() as client:
        yield client

    database.close_connection()
    database.DB_PATH = original_db
    journal_module.JOURNAL_FILE = original_journal
    journal_module._journal_instance = None
    host_module._host_instance = None


class Caller:
    """A client holding a keypair and tracking its own nonce."""

    def __init__(self, client):
        self.client = client
        self.private_key, self.public_key = generate_keypair()
        self.id = account_id(self.public_key)
        self.nonce = 0

    def register(self):
        return self.client.post('/api/accounts', json={"public_key": self.public_key})

    def call(self, route, operation, args=None, value=0):
        env = make_envelope(operation, args or {}, self.nonce, self.private_key, self.public_key, value=value)
        self.nonce += 1
        return self.client.post(route, json=env)


@pytest.fixture(scope="module")
def operator(app_client):
    c = Caller(app_client)
    assert c.register().status_code == 201
    return c


@pytest.fixture(scope="module")
def voter(app_client):
    c = Caller(app_client)
    assert c.register().status_code == 201
    return c


# ---------------------------------------------------------------------------
# Health / setup
# ---------------------------------------------------------------------------

def test_health(app_client):
    r = app_client.get('/api/health')
    assert r.status_code == 200
    assert r.get_json()["status"] == "ok"


def test_candidates_before_setup(app_client):
    r = app_client.get('/api/candidates')
    assert r.status_code == 409
    assert r.get_json()["code"] == "not_initialized"


def test_invalid_setup(app_client, operator):
    r = operator.call('/api/setup', "setup", {"total_tokens": 1000, "token_price": 0, "candidates": ["alice"]})
    assert r.status_code == 400
    assert r.get_json()["code"] == "invalid_setup"


def test_setup(app_client, operator):
    r = operator.call('/api/setup', "setup", {
        "total_tokens": 1000, "token_price": 10, "candidates": ["alice", "bob"],
    })
    data = r.get_json()
    assert r.status_code == 200
    assert data["success"]
    assert data["block_index"] >= 1

    assert app_client.get('/api/candidates').get_json()["candidates"] == ["alice", "bob"]


def test_setup_only_once(app_client, operator):
    r = operator.call('/api/setup', "setup", {"total_tokens": 5, "token_price": 1, "candidates": ["zed"]})
    assert r.status_code == 409
    assert r.get_json()["code"] == "already_initialized"


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

class TestAccounts:
    def test_account_lookup(self, app_client, voter):
        data = app_client.get(f'/api/accounts/{voter.id}').get_json()
        assert data["account_id"] == voter.id
        assert data["balance"] == host_module.INITIAL_BALANCE

    def test_duplicate_registration(self, app_client, voter):
        assert voter.register().status_code == 409

    def test_missing_public_key(self, app_client):
        assert app_client.post('/api/accounts', json={}).status_code == 400

    def test_non_object_body(self, app_client):
        assert app_client.post('/api/accounts', json=["key"]).status_code == 400

    def test_unknown_account(self, app_client):
        assert app_client.get('/api/accounts/0xdead').status_code == 404


# ---------------------------------------------------------------------------
# Sale and voting flow
# ---------------------------------------------------------------------------

class TestVotingFlow:
    def test_purchase(self, app_client, voter):
        r = voter.call('/api/purchase', "purchase", value=500)
        data = r.get_json()
        assert r.status_code == 200
        assert data["result"] == 50

        sale = app_client.get('/api/sale').get_json()
        assert sale["balance_tokens"] == 950
        assert sale["tokens_sold"] == 50
        assert app_client.get(f'/api/accounts/{voter.id}').get_json()["balance"] == host_module.INITIAL_BALANCE - 500

    def test_vote(self, app_client, voter):
        r = voter.call('/api/vote', "castVote", {"candidate": "alice", "amount": 30})
        data = r.get_json()
        assert data["success"]
        assert "tx_hash" in data

        assert app_client.get('/api/candidates/alice/tally').get_json()["tally"] == 30
        details = app_client.get(f'/api/voters/{voter.id}').get_json()
        assert details["tokens_bought"] == 50
        assert details["spend_per_candidate"] == [30, 0]
        assert details["remaining"] == 20

    def test_overspend_rejected(self, app_client, voter):
        before = app_client.get('/api/results').get_json()
        r = voter.call('/api/vote', "castVote", {"candidate": "bob", "amount": 25})
        assert r.status_code == 400
        assert r.get_json()["code"] == "insufficient_budget"
        assert app_client.get('/api/results').get_json() == before

    def test_invalid_candidate(self, app_client, voter):
        r = voter.call('/api/vote', "castVote", {"candidate": "carol", "amount": 1})
        assert r.status_code == 400
        assert r.get_json()["code"] == "invalid_candidate"

    def test_oversize_purchase(self, app_client, operator):
        r = operator.call('/api/purchase', "purchase", value=9510)
        assert r.status_code == 400
        assert r.get_json()["code"] == "insufficient_supply"
        assert app_client.get('/api/sale').get_json()["balance_tokens"] == 950

    def test_payment_beyond_funds(self, app_client, voter):
        r = voter.call('/api/purchase', "purchase", value=host_module.INITIAL_BALANCE * 10)
        assert r.status_code == 402

    def test_second_purchase_adds_budget(self, app_client, voter):
        before = app_client.get(f'/api/voters/{voter.id}').get_json()
        r = voter.call('/api/purchase', "purchase", value=100)
        assert r.get_json()["result"] == 10
        after = app_client.get(f'/api/voters/{voter.id}').get_json()
        assert after["tokens_bought"] == before["tokens_bought"] + 10
        assert after["remaining"] == before["remaining"] + 10


# ---------------------------------------------------------------------------
# Envelope handling
# ---------------------------------------------------------------------------

class TestEnvelopes:
    def test_replay_rejected(self, app_client, voter):
        env = make_envelope("castVote", {"candidate": "alice", "amount": 1}, voter.nonce,
                            voter.private_key, voter.public_key)
        voter.nonce += 1
        assert app_client.post('/api/vote', json=env).status_code == 200
        r = app_client.post('/api/vote', json=env)
        assert r.status_code == 409
        assert r.get_json()["code"] == "bad_nonce"

    def test_forged_signature(self, app_client, voter, operator):
        env = make_envelope("castVote", {"candidate": "alice", "amount": 1}, voter.nonce,
                            operator.private_key, voter.public_key)
        r = app_client.post('/api/vote', json=env)
        assert r.status_code == 403

    def test_envelope_for_other_route(self, app_client, voter):
        r = voter.call('/api/vote', "purchase", value=10)
        # rejected before the nonce is consumed
        voter.nonce -= 1
        assert r.status_code == 400

    def test_nonce_beyond_storage_range(self, app_client, voter):
        env = make_envelope("purchase", {}, 2**64, voter.private_key, voter.public_key, value=10)
        r = app_client.post('/api/purchase', json=env)
        assert r.status_code == 400
        assert r.get_json()["code"] == "invalid_call"
        assert app_client.get(f'/api/accounts/{voter.id}').get_json()["nonce"] == voter.nonce

    def test_missing_body(self, app_client):
        assert app_client.post('/api/vote', json={"candidate": "alice"}).status_code == 400

    def test_unregistered_caller(self, app_client):
        stranger = Caller(app_client)
        r = stranger.call('/api/vote', "castVote", {"candidate": "alice", "amount": 1})
        assert r.status_code == 404


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

class TestQueries:
    def test_valid(self, app_client):
        assert app_client.get('/api/candidates/bob/valid').get_json()["valid"]
        assert not app_client.get('/api/candidates/carol/valid').get_json()["valid"]

    def test_index(self, app_client):
        assert app_client.get('/api/candidates/alice/index').get_json()["index"] == 0
        assert app_client.get('/api/candidates/bob/index').get_json()["index"] == 1
        assert app_client.get('/api/candidates/carol/index').status_code == 400

    def test_tally_unknown_candidate(self, app_client):
        assert app_client.get('/api/candidates/carol/tally').status_code == 400

    def test_unknown_voter(self, app_client):
        data = app_client.get('/api/voters/0xnobody').get_json()
        assert data["tokens_bought"] == 0
        assert data["spend_per_candidate"] == [0, 0]

    def test_results(self, app_client):
        data = app_client.get('/api/results').get_json()
        assert data["candidates"] == ["alice", "bob"]
        assert set(data["tallies"]) == {"alice", "bob"}
        assert data["sale"]["total_tokens"] == 1000


# ---------------------------------------------------------------------------
# Sweep & journal
# ---------------------------------------------------------------------------

class TestSweepAndJournal:
    def test_sweep_beyond_contract_value_fails(self, app_client, operator):
        # 940 unsold tokens but the contract only holds 600 in payments
        r = operator.call('/api/sweep', "sweep", {"destination": operator.id})
        assert r.status_code == 500
        assert r.get_json()["code"] == "transfer_failure"
        balance = app_client.get(f'/api/accounts/{operator.id}').get_json()["balance"]
        assert balance == host_module.INITIAL_BALANCE

    def test_sweep(self, app_client, operator, voter):
        assert voter.call('/api/purchase', "purchase", value=4000).status_code == 200
        sale = app_client.get('/api/sale').get_json()
        r = operator.call('/api/sweep', "sweep", {"destination": operator.id})
        assert r.status_code == 200
        balance = app_client.get(f'/api/accounts/{operator.id}').get_json()["balance"]
        assert balance == host_module.INITIAL_BALANCE + sale["balance_tokens"]

    def test_journal(self, app_client):
        chain = app_client.get('/api/journal').get_json()["chain"]
        assert chain[0]["index"] == 0
        operations = [b["calls"][0]["operation"] for b in chain[1:]]
        assert operations[0] == "setup"
        assert "castVote" in operations
        assert "sweep" in operations

    def test_account_calls(self, app_client, voter):
        data = app_client.get(f'/api/accounts/{voter.id}/calls').get_json()
        operations = [c["operation"] for c in data["calls"]]
        assert operations[0] == "purchase"
        assert "castVote" in operations
        assert all(c["caller"] == voter.id for c in data["calls"])
        assert app_client.get('/api/accounts/0xnobody/calls').get_json()["calls"] == []

    def test_journal_verify(self, app_client):
        assert app_client.get('/api/journal/verify').get_json()["valid"]

    def test_block_lookup(self, app_client):
        assert app_client.get('/api/journal/0').get_json()["index"] == 0
        assert app_client.get('/api/journal/9999').status_code == 404

    def test_stats(self, app_client):
        data = app_client.get('/api/stats').get_json()
        assert data["total_calls"] >= 3
        assert data["sale"]["tokens_sold"] >= 50
