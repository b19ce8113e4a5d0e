import logging
from typing import Any

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS

from .config import Settings, load_settings
from .errors import BallotLedgerError, ServiceUnavailable, ValidationError
from .registry import parse_csv
from .services import VotingServices, build_services

logger = logging.getLogger(__name__)

EXTENSION_KEY = "ballotledger"

api = Blueprint("api", __name__, url_prefix="/api")


def _services() -> VotingServices:
    services = current_app.extensions.get(EXTENSION_KEY)
    if services is None:
        error = current_app.config.get("BALLOTLEDGER_SETUP_ERROR") or "unknown error"
        raise ServiceUnavailable(f"Voting services unavailable: {error}")
    return services


def _admin_id(data: dict[str, Any]) -> str:
    return str(data.get("admin_id") or "unknown-admin").strip()


def _require(data: dict[str, Any], *fields: str) -> None:
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")


@api.route("/elections", methods=["POST"])
def create_election():
    data = request.json or {}
    election = _services().elections.create(
        name=data.get("name", ""),
        description=data.get("description", ""),
        candidates=data.get("candidates") or [],
        start_time=data.get("startTime"),
        end_time=data.get("endTime"),
        actor=_admin_id(data),
    )
    return jsonify(election.to_dict()), 201


@api.route("/elections", methods=["GET"])
def list_elections():
    elections = _services().elections.list_elections(request.args.get("status"))
    return jsonify([e.to_dict() for e in elections])


@api.route("/elections/<election_id>", methods=["GET"])
def get_election(election_id: str):
    return jsonify(_services().elections.get(election_id).to_dict())


@api.route("/elections/<election_id>/open", methods=["PUT"])
def open_election(election_id: str):
    data = request.get_json(silent=True) or {}
    return jsonify(_services().elections.open(election_id, actor=_admin_id(data)).to_dict())


@api.route("/elections/<election_id>/close", methods=["PUT"])
def close_election(election_id: str):
    data = request.get_json(silent=True) or {}
    return jsonify(_services().elections.close(election_id, actor=_admin_id(data)).to_dict())


@api.route("/elections/<election_id>/tally", methods=["PUT", "POST"])
def tally_election(election_id: str):
    data = request.get_json(silent=True) or {}
    result = _services().elections.tally(election_id, actor=_admin_id(data))
    return jsonify(result.to_dict())


@api.route("/elections/<election_id>/tally", methods=["GET"])
def get_tally(election_id: str):
    services = _services()
    services.elections.get(election_id)
    return jsonify(services.tally.get(election_id).to_dict())


@api.route("/elections/<election_id>/audit", methods=["GET"])
def election_audit(election_id: str):
    limit_raw = request.args.get("limit", "100")
    try:
        limit = int(limit_raw)
    except ValueError:
        limit = 100
    services = _services()
    services.elections.get(election_id)
    events = services.audit.list_events(election_id=election_id, limit=limit)
    return jsonify([e.to_dict() for e in events])


@api.route("/voters", methods=["POST"])
def register_voter():
    data = request.json or {}
    _require(data, "electionId", "voterId", "walletAddress")
    record = _services().registry.register(
        data["electionId"], data["voterId"], data["walletAddress"], actor=_admin_id(data)
    )
    return jsonify(record.to_dict()), 201


@api.route("/voters/bulk", methods=["POST"])
def bulk_register_voters():
    if request.is_json:
        data = request.json or {}
        election_id = data.get("electionId")
        entries = data.get("voters")
        if entries is None and isinstance(data.get("csv"), str):
            entries = parse_csv(data["csv"])
        admin_id = _admin_id(data)
    else:
        election_id = request.args.get("electionId")
        entries = parse_csv(request.get_data(as_text=True))
        admin_id = _admin_id(request.args)
    if not election_id:
        raise ValidationError("electionId is required")
    if not isinstance(entries, list):
        raise ValidationError("voters must be a list of {voterId, walletAddress}")
    report = _services().registry.bulk_register(election_id, entries, actor=admin_id)
    return jsonify(report.to_dict()), 207 if report.failed else 200


@api.route("/voters/<election_id>", methods=["GET"])
def list_voters(election_id: str):
    voters = _services().registry.list_voters(election_id)
    return jsonify([v.to_dict() for v in voters])


@api.route("/voters/check/<election_id>/<wallet>", methods=["GET"])
def check_voter(election_id: str, wallet: str):
    return jsonify(_services().registry.check(election_id, wallet))


@api.route("/voters/<election_id>/<voter_id>/revoke", methods=["PUT"])
def revoke_voter(election_id: str, voter_id: str):
    data = request.get_json(silent=True) or {}
    record = _services().registry.revoke(election_id, voter_id, actor=_admin_id(data))
    return jsonify(record.to_dict())


@api.route("/votes", methods=["POST"])
def commit_vote():
    data = request.json or {}
    _require(data, "electionId", "voterId", "walletAddress", "choice")
    receipt = _services().commitments.commit(
        election_id=data["electionId"],
        voter_id=data["voterId"],
        wallet_address=data["walletAddress"],
        choice=data["choice"],
        salt=data.get("salt") or None,
    )
    return jsonify(receipt.to_dict()), 201


@api.route("/votes/reveal", methods=["POST"])
def reveal_vote():
    data = request.json or {}
    _require(data, "electionId", "voterId", "choice", "salt")
    accepted = _services().commitments.reveal(
        data["electionId"], data["voterId"], data["choice"], data["salt"]
    )
    return jsonify({"accepted": accepted, "electionId": data["electionId"], "voterId": data["voterId"]})


@api.route("/votes/verify/<tx_hash>", methods=["GET"])
def verify_vote(tx_hash: str):
    return jsonify(_services().verifier.verify(tx_hash).to_dict())


def handle_error(exc: BallotLedgerError):
    if exc.http_status >= 500:
        logger.error("%s: %s", exc.code, exc.message)
    return jsonify(exc.to_dict()), exc.http_status


def health():
    services = current_app.extensions.get(EXTENSION_KEY)
    return jsonify(
        {
            "status": "ok" if services else "degraded",
            "services": "ready" if services else "unavailable",
            "setup_error": current_app.config.get("BALLOTLEDGER_SETUP_ERROR"),
        }
    )


def create_app(settings: Settings | None = None, services: VotingServices | None = None) -> Flask:
    settings = settings or load_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    app = Flask(__name__)
    CORS(app, origins=settings.cors_origins)
    app.config["BALLOTLEDGER_SETUP_ERROR"] = None

    if services is None:
        try:
            services = build_services(settings)
        except Exception as exc:  # noqa: BLE001
            logger.error("Voting services failed to start: %s", exc)
            app.config["BALLOTLEDGER_SETUP_ERROR"] = str(exc)
    if services is not None:
        app.extensions[EXTENSION_KEY] = services

    app.register_blueprint(api)
    app.register_error_handler(BallotLedgerError, handle_error)
    app.add_url_rule("/health", "health", health)
    return app


if __name__ == "__main__":
    create_app().run(debug=True)
