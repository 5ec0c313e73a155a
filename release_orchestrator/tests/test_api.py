"""
Tests for the Release Orchestrator HTTP API.

Module: tests/test_api.py
"""

from typing import Callable, Dict, Iterator

import pytest
from fastapi.testclient import TestClient

from release_orchestrator.service.main import app
from release_orchestrator.service.orchestrator import PipelineOrchestrator
from release_orchestrator.tests.helpers import SIGNATURE, ScriptedAdapter, scan_with

Factory = Callable[..., PipelineOrchestrator]

APPROVALS = [
    ("peer", "alice"),
    ("security_gatekeeper", "bob"),
    ("mission_owner", "carol"),
]


@pytest.fixture
def tools() -> Dict[str, ScriptedAdapter]:
    return {}


@pytest.fixture
def client(
    make_orchestrator: Factory, tools: Dict[str, ScriptedAdapter]
) -> Iterator[TestClient]:
    """Test client bound to an orchestrator with scripted tools."""
    app.state.orchestrator = make_orchestrator(tools)
    with TestClient(app) as test_client:
        yield test_client
    app.state.orchestrator = None


def submit(client: TestClient, change_id: str = "C1") -> Dict:
    response = client.post(
        "/changes",
        json={"revision": "abc123", "submitted_by": "erin", "change_id": change_id},
    )
    assert response.status_code == 201
    return response.json()


def approve(client: TestClient, change_id: str, tier: str, approver: str, **extra):
    body = {
        "tier": tier,
        "decision": "approve",
        "approver": approver,
        "signature": SIGNATURE,
    }
    body.update(extra)
    return client.post(f"/changes/{change_id}/approvals", json=body)


def approve_all(client: TestClient, change_id: str = "C1") -> None:
    for tier, approver in APPROVALS:
        assert approve(client, change_id, tier, approver).status_code == 201


class TestServiceEndpoints:
    """Test suite for service-level endpoints."""

    def test_root_endpoint(self, client: TestClient) -> None:
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "Release Orchestrator"
        assert "version" in data

    def test_health_check(self, client: TestClient) -> None:
        """Test health reports tracked runs."""
        submit(client)

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["pipelines"] == 1

    def test_health_degraded_on_broken_chain(self, client: TestClient) -> None:
        submit(client)
        entries = app.state.orchestrator.chain._chains["C1"]
        entries[0] = entries[0].model_copy(update={"payload": {"revision": "forged"}})

        assert client.get("/health").json()["status"] == "degraded"

    def test_uninitialized_orchestrator(self) -> None:
        app.state.orchestrator = None

        response = TestClient(app).get("/changes")

        assert response.status_code == 503
        assert response.json()["error"] == "HTTPException"


class TestChangeEndpoints:
    """Test suite for change submission and approval endpoints."""

    def test_submit_change(self, client: TestClient) -> None:
        data = submit(client)

        assert data["change"]["change_id"] == "C1"
        assert data["state"] == "awaiting_approval"
        assert data["approval_deadline"] is not None

    def test_duplicate_change(self, client: TestClient) -> None:
        submit(client)

        response = client.post(
            "/changes", json={"revision": "abc124", "submitted_by": "erin", "change_id": "C1"}
        )

        assert response.status_code == 409
        assert response.json()["error"] == "change_not_open"

    def test_invalid_request_body(self, client: TestClient) -> None:
        response = client.post("/changes", json={"submitted_by": "erin"})

        assert response.status_code == 422

    def test_unknown_change(self, client: TestClient) -> None:
        response = client.get("/changes/missing")

        assert response.status_code == 404
        data = response.json()
        assert data["error"] == "change_not_found"
        assert data["details"]["change_id"] == "missing"

    def test_list_changes_by_state(self, client: TestClient) -> None:
        submit(client, "C1")
        submit(client, "C2")
        approve_all(client, "C2")

        ready = client.get("/changes", params={"state": "ready"}).json()

        assert [r["change"]["change_id"] for r in ready] == ["C2"]
        assert len(client.get("/changes").json()) == 2

    def test_out_of_order_approval(self, client: TestClient) -> None:
        """Test a mission owner cannot approve ahead of lower tiers."""
        submit(client)

        response = approve(client, "C1", "mission_owner", "carol")

        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "out_of_order_approval"
        assert data["details"]["missing"] == ["peer", "security_gatekeeper"]

    def test_unauthorized_approver(self, client: TestClient) -> None:
        submit(client)

        response = approve(client, "C1", "peer", "mallory")

        assert response.status_code == 403
        assert response.json()["error"] == "unauthorized_approver"

    def test_invalid_signature(self, client: TestClient) -> None:
        submit(client)

        response = approve(client, "C1", "peer", "alice", signature="nope")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_signature"

    def test_readiness(self, client: TestClient) -> None:
        submit(client)
        assert client.get("/changes/C1/ready").json()["ready"] is False

        approve_all(client)

        assert client.get("/changes/C1/ready").json() == {"change_id": "C1", "ready": True}


class TestPipelineEndpoints:
    """Test suite for execution, risk acceptance and audit endpoints."""

    def test_run_deploys_approved_change(self, client: TestClient) -> None:
        """Test the full flow through the API."""
        submit(client)
        approve_all(client)

        response = client.post("/changes/C1/run")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "deployed"
        assert {name: s["status"] for name, s in data["stages"].items()} == {
            "SAST": "passed",
            "SCA": "passed",
            "Build": "passed",
            "Deploy": "passed",
        }
        assert data["blocking"] == []
        assert data["chain"]["valid"] is True

        attestations = client.get("/changes/C1/attestations").json()
        assert attestations[0]["subject_type"] == "change_submitted"
        assert [a["sequence"] for a in attestations] == list(range(len(attestations)))

        verification = client.get("/changes/C1/verify").json()
        assert verification["valid"] is True
        assert verification["length"] == len(attestations)

    def test_run_without_approval(self, client: TestClient) -> None:
        submit(client)

        response = client.post("/changes/C1/run")

        assert response.status_code == 412
        data = response.json()
        assert data["error"] == "gate_not_satisfied"
        assert data["details"]["pending_tiers"] == [t for t, _ in APPROVALS]

    def test_emergency_override(self, client: TestClient) -> None:
        submit(client)
        client.post(
            "/changes/C1/approvals",
            json={
                "tier": "peer",
                "decision": "reject",
                "approver": "alice",
                "signature": SIGNATURE,
            },
        )

        response = client.post(
            "/changes/C1/emergency-override",
            json={"authority": "carol", "signature": SIGNATURE, "reason": "Sev1 hotfix"},
        )

        assert response.status_code == 201
        assert response.json()["subject_type"] == "emergency_override"
        assert client.get("/changes/C1").json()["state"] == "awaiting_approval"

    def test_abort(self, client: TestClient) -> None:
        submit(client)

        response = client.post(
            "/changes/C1/abort", json={"requested_by": "erin", "reason": "superseded"}
        )

        assert response.status_code == 200
        assert response.json()["state"] == "aborted"
        assert client.post("/changes/C1/abort", json={"requested_by": "erin"}).status_code == 409


class TestBlockedPipeline:
    """Test suite for a pipeline blocked by a policy violation."""

    @pytest.fixture
    def tools(self) -> Dict[str, ScriptedAdapter]:
        return {"sca": ScriptedAdapter(scan_with(critical=1))}

    def test_blocked_run_and_risk_acceptance(self, client: TestClient) -> None:
        """Test a policy failure is reported, accepted, and the run resumes."""
        submit(client)
        approve_all(client)

        blocked = client.post("/changes/C1/run").json()
        assert blocked["state"] == "blocked"
        assert "stage 'SCA' failed: critical findings 1 > 0" in blocked["blocking"]

        refused = client.post("/changes/C1/run")
        assert refused.status_code == 422
        assert refused.json()["details"]["breaches"] == ["SCA: critical findings 1 > 0"]

        accepted = client.post(
            "/changes/C1/stages/SCA/risk-acceptance",
            json={"approver": "carol", "signature": SIGNATURE, "note": "Mitigated by WAF rule"},
        )
        assert accepted.status_code == 201
        assert accepted.json()["status"] == "passed_with_exception"

        resumed = client.post("/changes/C1/run").json()
        assert resumed["state"] == "deployed"
        assert resumed["stages"]["SCA"]["status"] == "passed_with_exception"

        summary = client.get("/audit/summary").json()
        assert summary[0]["change_id"] == "C1"
        assert summary[0]["overrides"] == 1
