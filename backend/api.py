"""
TokenVote REST API

Accounts:
  POST /api/accounts                     — Register a public key, open a funded value account
  GET  /api/accounts/<id>                — Balance and next nonce
  GET  /api/accounts/<id>/calls          — Journaled calls made by this account

Contract calls (signed envelopes, see accounts.py):
  POST /api/setup                        — Register candidates and open the token sale
  POST /api/purchase                     — Buy tokens with the attached value
  POST /api/vote                         — Spend tokens on a candidate
  POST /api/sweep                        — Transfer value out of the contract

Read-only queries:
  GET  /api/candidates                   — All candidates in registry order
  GET  /api/candidates/<name>/valid      — Is this a registered candidate?
  GET  /api/candidates/<name>/index      — Registry position of a candidate
  GET  /api/candidates/<name>/tally      — Tokens spent on a candidate
  GET  /api/results                      — Every candidate's tally
  GET  /api/sale                         — Supply, price and tokens sold
  GET  /api/voters/<id>                  — Tokens bought and spend per candidate

Audit:
  GET  /api/journal                      — Full call journal
  GET  /api/journal/verify               — Verify journal integrity
  GET  /api/journal/<idx>                — A specific block
  GET  /api/stats                        — System statistics
"""

import sys
import os
from pathlib import Path

# Allow importing siblings
sys.path.insert(0, str(Path(__file__).parent))
sys.path.insert(0, str(Path(__file__).parent.parent / "contract"))
sys.path.insert(0, str(Path(__file__).parent.parent / "blockchain"))

from flask import Flask, request, jsonify
from flask_cors import CORS

from host import InvalidCall, get_host
from voting_errors import VotingError, status_for

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = Flask(__name__)
CORS(app)


def _setup_from_env():
    """Return setup args from TOKENVOTE_* variables, or None if not all set."""
    total = os.environ.get("TOKENVOTE_TOTAL_TOKENS")
    price = os.environ.get("TOKENVOTE_TOKEN_PRICE")
    candidates = os.environ.get("TOKENVOTE_CANDIDATES")
    if not (total and price and candidates):
        return None
    return {
        "total_tokens": int(total),
        "token_price": int(price),
        "candidates": [c.strip() for c in candidates.split(",") if c.strip()],
    }


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

def initialize(setup_args: dict = None):
    host = get_host()
    host.bootstrap()
    # Warm up journal singleton
    host.journal

    setup_args = setup_args or _setup_from_env()
    if setup_args:
        result = host.execute("setup", "operator", setup_args)
        if result["success"]:
            print(f"[api] Voting set up for {setup_args['candidates']}.")
        else:
            print(f"[api] Voting setup skipped: {result['error']}")
    print("[api] TokenVote initialized and ready.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _failure(error):
    return jsonify(error.to_dict()), error.status


def _signed_call(operation: str):
    """Authenticate the request envelope and run ``operation``."""
    host = get_host()
    try:
        caller, args, value = host.authenticate(request.get_json(silent=True), operation)
        result = host.execute(operation, caller, args, value)
    except InvalidCall as e:
        return _failure(e)

    if result["success"]:
        return jsonify(result), 200
    return jsonify(result), status_for(result["code"])


def _query(operation: str, **args):
    try:
        return get_host().query(operation, args), None
    except (VotingError, InvalidCall) as e:
        return None, _failure(e)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

@app.route("/api/accounts", methods=["POST"])
def api_open_account():
    """
    Register a caller's public key.

    Request JSON:
      { "public_key": str }

    Response JSON (success):
      { "success": true, "account_id": str, "balance": int, "nonce": int }
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    public_key = str(data.get("public_key", "")).strip()
    if not public_key:
        return jsonify({"success": False, "error": "public_key is required"}), 400

    try:
        account = get_host().open_account(public_key)
    except InvalidCall as e:
        return _failure(e)
    return jsonify({
        "success": True,
        "account_id": account["account_id"],
        "balance": account["balance"],
        "nonce": account["nonce"],
    }), 201


@app.route("/api/accounts/<account_id>", methods=["GET"])
def api_account(account_id: str):
    account = get_host().account(account_id)
    if account is None:
        return jsonify({"error": "Account not found"}), 404
    return jsonify({
        "account_id": account["account_id"],
        "balance": account["balance"],
        "nonce": account["nonce"],
    })


@app.route("/api/accounts/<account_id>/calls", methods=["GET"])
def api_account_calls(account_id: str):
    """Committed calls made by ``account_id``, oldest first."""
    return jsonify({"account_id": account_id, "calls": get_host().journal.calls_by(account_id)})


# ---------------------------------------------------------------------------
# Contract calls
# ---------------------------------------------------------------------------

@app.route("/api/setup", methods=["POST"])
def api_setup():
    """
    Set up the vote. Envelope args:
      { "total_tokens": int, "token_price": int, "candidates": [str] }
    """
    return _signed_call("setup")


@app.route("/api/purchase", methods=["POST"])
def api_purchase():
    """Buy tokens. The envelope's ``value`` is the payment; result is tokens bought."""
    return _signed_call("purchase")


@app.route("/api/vote", methods=["POST"])
def api_vote():
    """
    Cast a token-weighted vote. Envelope args:
      { "candidate": str, "amount": int }

    Response JSON (success):
      { "success": true, "tx_hash": str, "block_index": int }
    """
    return _signed_call("castVote")


@app.route("/api/sweep", methods=["POST"])
def api_sweep():
    """Envelope args: { "destination": str }"""
    return _signed_call("sweep")


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

@app.route("/api/candidates", methods=["GET"])
def api_candidates():
    """Return the list of valid candidates."""
    candidates, failure = _query("allCandidates")
    if failure:
        return failure
    return jsonify({"candidates": candidates})


@app.route("/api/candidates/<name>/valid", methods=["GET"])
def api_candidate_valid(name: str):
    valid, failure = _query("isValidCandidate", name=name)
    if failure:
        return failure
    return jsonify({"candidate": name, "valid": valid})


@app.route("/api/candidates/<name>/index", methods=["GET"])
def api_candidate_index(name: str):
    index, failure = _query("candidateIndex", name=name)
    if failure:
        return failure
    return jsonify({"candidate": name, "index": index})


@app.route("/api/candidates/<name>/tally", methods=["GET"])
def api_candidate_tally(name: str):
    tally, failure = _query("totalTally", name=name)
    if failure:
        return failure
    return jsonify({"candidate": name, "tally": tally})


@app.route("/api/results", methods=["GET"])
def api_results():
    """Return current tallies for every candidate."""
    tallies, failure = _query("allTallies")
    if failure:
        return failure
    sale, _ = _query("saleState")
    return jsonify({"tallies": tallies, "sale": sale, "candidates": list(tallies)})


@app.route("/api/sale", methods=["GET"])
def api_sale():
    sale, failure = _query("saleState")
    if failure:
        return failure
    return jsonify(sale)


@app.route("/api/voters/<identity>", methods=["GET"])
def api_voter(identity: str):
    """Return a participant's budget and per-candidate spend."""
    details, failure = _query("voterDetails", identity=identity)
    if failure:
        return failure
    tokens_bought, spend = details
    return jsonify({
        "identity": identity,
        "tokens_bought": tokens_bought,
        "spend_per_candidate": spend,
        "remaining": tokens_bought - sum(spend),
    })


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@app.route("/api/journal", methods=["GET"])
def api_journal():
    """Return the full call journal for auditing."""
    return jsonify({"chain": get_host().journal.get_chain()})


@app.route("/api/journal/verify", methods=["GET"])
def api_journal_verify():
    return jsonify(get_host().journal.verify_chain())


@app.route("/api/journal/<int:block_index>", methods=["GET"])
def api_block(block_index: int):
    block = get_host().journal.get_block(block_index)
    if block is None:
        return jsonify({"error": "Block not found"}), 404
    return jsonify(block)


@app.route("/api/stats", methods=["GET"])
def api_stats():
    host = get_host()
    stats = host.journal.get_stats()
    sale, _ = _query("saleState")
    stats["sale"] = sale
    return jsonify(stats)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.route("/api/health", methods=["GET"])
def api_health():
    return jsonify({"status": "ok", "service": "TokenVote"})


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    initialize()
    port = int(os.environ.get("PORT", 5000))
    debug = os.environ.get("DEBUG", "false").lower() == "true"
    app.run(host="0.0.0.0", port=port, debug=debug)
