"""
test_api.py - HTTP API Tests

End-to-end checks through FastAPI's TestClient:
- session create / get / delete
- suggest, confirm, reject, link, unlink with error mapping
- optimistic concurrency via expectedVersion
- persistence across a registry restart
- duplicate session ids and failed saves

Usage: python test_api.py
"""

from __future__ import annotations

import os
import sys
import tempfile

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import api
from session_store import SessionStore


def _configure_output_symbols() -> tuple[str, str, str]:
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except Exception:
        pass

    try:
        "✓✗═".encode(sys.stdout.encoding or "utf-8")
        return "✓", "✗", "═"
    except Exception:
        return "[OK]", "[FAIL]", "="


PASS, FAIL, LINE = _configure_output_symbols()


def _session_body() -> dict:
    return {
        "label": "March 2024 purchases",
        "internalItems": [
            {"id": "s1", "invoiceNumber": "INV001", "vendorName": "Alpha", "baseAmount": 100, "vatAmount": 7},
            {"id": "s2", "vendorName": "Beta", "baseAmount": 400, "vatAmount": 28, "date": "2024-03-01"},
            {"id": "s3", "vendorName": "Gamma", "baseAmount": 90, "vatAmount": 6.3},
        ],
        "externalRows": [
            {"vendorName": "Alpha", "invoiceNumber": "inv001", "baseAmount": 100, "vatAmount": 7},
            {"vendorName": "Beta Ltd", "baseAmount": 400, "vatAmount": 28, "date": "2024-03-20"},
            {"vendorName": "Gamma", "baseAmount": 90, "vatAmount": 6.3},
        ],
    }


class FlakyStore(SessionStore):
    """Session store whose writes can be switched off."""

    def __init__(self, directory: str) -> None:
        super().__init__(directory)
        self.broken = False

    def save(self, snapshot):
        if self.broken:
            raise OSError("disk full")
        return super().save(snapshot)


def _pair_ids(response) -> list[str]:
    if response.status_code != 200:
        return []
    return [pair["id"] for pair in response.json().get("pairs", [])]


def main() -> int:
    passed = 0
    failed = 0

    def check(name: str, condition: bool) -> None:
        nonlocal passed, failed
        if condition:
            passed += 1
            print(f"    {PASS} {name}")
        else:
            failed += 1
            print(f"    {FAIL} {name}")

    print(LINE * 62)
    print("  HTTP API Tests")
    print(LINE * 62)

    with tempfile.TemporaryDirectory(prefix="recon-api-") as tmp:
        api.registry = api.SessionRegistry(SessionStore(tmp))
        client = TestClient(api.app)

        print("\n  Health and Create:")
        health = client.get("/health")
        check("GET /health returns 200", health.status_code == 200 and health.json() == {"status": "ok"})

        created = client.post("/sessions", json=_session_body())
        check("POST /sessions returns 200", created.status_code == 200)
        body = created.json() if created.status_code == 200 else {}
        session_id = str(body.get("sessionId") or "")
        check("New session at version 0", body.get("version") == 0)
        check("Initial pairs", _pair_ids(created) == ["pair-s1-0", "int-s2", "int-s3", "ext-1", "ext-2"])
        duplicate = client.post("/sessions", json={**_session_body(), "sessionId": session_id, "internalItems": []})
        check("Re-create with an existing id -> 409", duplicate.status_code == 409)
        kept = client.get(f"/sessions/{session_id}")
        check("Existing session left intact", _pair_ids(kept) == ["pair-s1-0", "int-s2", "int-s3", "ext-1", "ext-2"])

        bad = client.post("/sessions", json={"internalItems": [{"baseAmount": 5}]})
        check("Record without id -> 400", bad.status_code == 400)
        dupes = client.post("/sessions", json={"internalItems": [{"id": "a"}, {"id": "a"}]})
        check("Duplicate ids -> 400", dupes.status_code == 400)

        check("GET session returns 200", client.get(f"/sessions/{session_id}").status_code == 200)
        check("Unknown session -> 404", client.get("/sessions/sess_nope").status_code == 404)
        check("Listed", session_id in client.get("/sessions").json().get("sessions", []))

        print("\n  Suggest / Confirm / Reject:")
        request_view = client.get(f"/sessions/{session_id}/suggestion-request")
        check(
            "Suggestion request shows leftovers",
            request_view.status_code == 200
            and [item["id"] for item in request_view.json()["internalItems"]] == ["s2", "s3"]
            and [row["index"] for row in request_view.json()["externalRows"]] == [1, 2],
        )

        suggested = client.post(
            f"/sessions/{session_id}/suggest",
            json={"suggestions": [{"internalId": "s2", "externalIndex": 1, "confidence": 0.75, "reason": "same amount"}]},
        )
        check("POST suggest returns 200", suggested.status_code == 200)
        check("Suggestion merged", suggested.status_code == 200 and suggested.json()["result"]["created"] == ["ai-s2-1"])
        check("Version bumped", suggested.status_code == 200 and suggested.json()["version"] == 1)

        confirmed = client.post(f"/sessions/{session_id}/confirm", json={"pairId": "ai-s2-1", "expectedVersion": 1})
        check("Confirm with current version -> 200", confirmed.status_code == 200 and confirmed.json()["version"] == 2)
        stale = client.post(f"/sessions/{session_id}/confirm", json={"pairId": "ai-s2-1", "expectedVersion": 1})
        check("Stale expectedVersion -> 409", stale.status_code == 409)
        check("Confirm unknown pair -> 404", client.post(f"/sessions/{session_id}/confirm", json={"pairId": "ai-x-9"}).status_code == 404)
        check("Reject exact pair -> 409", client.post(f"/sessions/{session_id}/reject", json={"pairId": "pair-s1-0"}).status_code == 409)
        check("Missing pairId -> 400", client.post(f"/sessions/{session_id}/confirm", json={}).status_code == 400)

        print("\n  Link / Unlink:")
        linked = client.post(f"/sessions/{session_id}/link", json={"internalId": "s3", "externalIndex": 2})
        check("Link leftovers -> 200", linked.status_code == 200 and "manual-s3-2" in _pair_ids(linked))
        relink = client.post(f"/sessions/{session_id}/link", json={"internalId": "s3", "externalIndex": 2})
        check("Re-link -> 409", relink.status_code == 409)
        check("Link unknown item -> 404", client.post(f"/sessions/{session_id}/link", json={"internalId": "zz", "externalIndex": 0}).status_code == 404)
        unlinked = client.post(f"/sessions/{session_id}/unlink", json={"pairId": "manual-s3-2"})
        check("Unlink -> 200", unlinked.status_code == 200 and {"int-s3", "ext-2"} <= set(_pair_ids(unlinked)))

        local = client.post(f"/sessions/{session_id}/suggest")
        check(
            "Local scorer pairs same-name leftovers",
            local.status_code == 200 and local.json()["result"]["created"] == ["ai-s3-2"],
        )

        summary = client.get(f"/sessions/{session_id}/summary")
        summary_body = summary.json() if summary.status_code == 200 else {}
        check("Summary -> 200", summary.status_code == 200)
        check("Summary counts", summary_body.get("matched") == 2 and summary_body.get("aiPending") == 1)
        review = client.get(f"/sessions/{session_id}/review")
        check("Review queue starts with pending ai", review.status_code == 200 and review.json()["pairs"][0]["id"] == "ai-s3-2")

        print("\n  Persistence:")
        before = client.get(f"/sessions/{session_id}").json()
        api.registry = api.SessionRegistry(SessionStore(tmp))
        after = client.get(f"/sessions/{session_id}")
        check("Session reloads after restart", after.status_code == 200)
        check(
            "Reloaded pairs and version match",
            after.status_code == 200
            and after.json()["pairs"] == before["pairs"]
            and after.json()["version"] == before["version"],
        )

        print("\n  Report Reload / Reset / Delete:")
        reloaded = client.post(
            f"/sessions/{session_id}/report",
            json={"rows": [{"vendorName": "Alpha", "invoiceNumber": "INV001", "baseAmount": 100, "vatAmount": 7}]},
        )
        check("Report reload moves the version forward", reloaded.status_code == 200 and reloaded.json()["version"] == 6)
        stale_unlink = client.post(
            f"/sessions/{session_id}/unlink",
            json={"pairId": "pair-s1-0", "expectedVersion": 5},
        )
        check("Version from before the reload -> 409", stale_unlink.status_code == 409)
        check("Stale unlink left the new pairs", "pair-s1-0" in _pair_ids(client.get(f"/sessions/{session_id}")))
        check("Report reload rebuilds pairs", _pair_ids(reloaded) == ["pair-s1-0", "int-s2", "int-s3"])
        reset = client.post(f"/sessions/{session_id}/reset")
        check(
            "Reset drops report rows",
            reset.status_code == 200 and reset.json()["summary"]["hasExternalData"] is False
            and reset.json()["version"] == 7,
        )
        deleted = client.delete(f"/sessions/{session_id}")
        check("DELETE session -> 200", deleted.status_code == 200)
        check("Deleted session -> 404", client.get(f"/sessions/{session_id}").status_code == 404)

    print("\n  Failed Save:")
    with tempfile.TemporaryDirectory(prefix="recon-api-flaky-") as tmp:
        store = FlakyStore(tmp)
        api.registry = api.SessionRegistry(store)
        client = TestClient(api.app)
        created = client.post("/sessions", json={**_session_body(), "sessionId": "sess_flaky"})
        check("Session created", created.status_code == 200)
        store.broken = True
        link_attempt = client.post("/sessions/sess_flaky/link", json={"internalId": "s3", "externalIndex": 2})
        check("Failed save -> 500", link_attempt.status_code == 500)
        store.broken = False
        current = client.get("/sessions/sess_flaky")
        check(
            "Unsaved change is not served afterwards",
            current.status_code == 200
            and "manual-s3-2" not in _pair_ids(current)
            and current.json()["version"] == 0,
        )

    print(f"\n{LINE * 62}")
    print(f"  Results: {passed}/{passed + failed} passed")
    if failed == 0:
        print(f"  HTTP API: COMPLETE {PASS}")
    else:
        print(f"  HTTP API: {failed} FAILED")
    print(LINE * 62)
    return failed


def test_api_checks() -> None:
    assert main() == 0


if __name__ == "__main__":
    sys.exit(1 if main() else 0)
