"""HTTP tests for webhooks, enrollments and the admin surface."""
from tests.conftest import create_enrollment, lemlist_payload, make_event


class TestWebhooks:
    """POST /api/webhooks/{provider} status codes."""

    def test_applied_then_duplicate(self, client, db):
        enrollment = create_enrollment(db)
        payload = lemlist_payload(enrollment.id, "emailsOpened", event_id="act_1")

        resp = client.post("/api/webhooks/lemlist", json=payload)
        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["outcome"] == "applied"
        assert body["enrollment_id"] == enrollment.id

        resp = client.post("/api/webhooks/lemlist", json=payload)
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "duplicate"

    def test_unknown_enrollment_is_queued(self, client):
        resp = client.post("/api/webhooks/lemlist", json=lemlist_payload("enr_not_yet"))
        assert resp.status_code == 202
        assert resp.json()["outcome"] == "queued"

        status = client.get("/api/admin/orphaned-events/status").json()
        assert status["depth"] == 1

    def test_malformed_is_dead_lettered(self, client):
        resp = client.post("/api/webhooks/postmark", json={"MessageID": "m-1"})
        assert resp.status_code == 202
        body = resp.json()
        assert body["outcome"] == "dead_lettered"
        assert body["dead_letter_id"]

        entry = client.get(f"/api/admin/dead-letters/{body['dead_letter_id']}").json()
        assert entry["provider"] == "postmark"
        assert entry["status"] == "failed"
        assert entry["raw_payload"] == {"MessageID": "m-1"}

    def test_non_object_body_is_dead_lettered(self, client):
        resp = client.post("/api/webhooks/heygen", json=[1, 2, 3])
        assert resp.status_code == 202
        assert resp.json()["outcome"] == "dead_lettered"


class TestEnrollmentRoutes:
    def test_get_enrollment_with_counters(self, client, db):
        enrollment = create_enrollment(db)
        client.post("/api/webhooks/lemlist", json=lemlist_payload(enrollment.id, "emailsSent"))
        client.post("/api/webhooks/lemlist", json=lemlist_payload(enrollment.id, "emailsClicked"))

        body = client.get(f"/api/enrollments/{enrollment.id}").json()
        assert body["status"] == "clicked"
        assert body["counters"]["sent"] == 1
        assert body["counters"]["clicked"] == 1

        events = client.get(f"/api/enrollments/{enrollment.id}/events").json()
        assert sorted(e["event_type"] for e in events) == ["clicked", "sent"]

    def test_unknown_enrollment(self, client):
        assert client.get("/api/enrollments/nope").status_code == 404
        assert client.get("/api/enrollments/nope/events").status_code == 404


class TestDeadLetterRoutes:
    """Admin list / replay / ignore."""

    def test_replay_flow(self, client, db, components):
        entry = components.dead_letters.record(
            make_event("enr_dl", event_type="replied"), reason="retries exhausted after 6 attempts",
        )
        create_enrollment(db, enrollment_id="enr_dl")

        resp = client.post(f"/api/admin/dead-letters/{entry.id}/replay")
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["outcome"] == "applied"
        assert body["entry"]["status"] == "replayed"

        resp = client.post(f"/api/admin/dead-letters/{entry.id}/replay")
        assert resp.status_code == 409

        enrollment = client.get("/api/enrollments/enr_dl").json()
        assert enrollment["status"] == "replied"

    def test_ignore_and_list(self, client, components):
        a = components.dead_letters.record(make_event("k1"), reason="r")
        b = components.dead_letters.record(make_event("k2"), reason="r")
        assert client.post(f"/api/admin/dead-letters/{a.id}/ignore").json()["status"] == "ignored"

        page = client.get("/api/admin/dead-letters/", params={"status": "failed"}).json()
        assert [e["id"] for e in page["data"]] == [b.id]
        assert page["pagination"] == {"total": 1, "limit": 100, "offset": 0, "has_more": False}

        stats = client.get("/api/admin/dead-letters/stats").json()
        assert stats["by_status"]["ignored"] == 1

    def test_unknown_id(self, client):
        assert client.get("/api/admin/dead-letters/nope").status_code == 404
        assert client.post("/api/admin/dead-letters/nope/replay").status_code == 404
        assert client.post("/api/admin/dead-letters/nope/ignore").status_code == 404

    def test_limit_validation(self, client):
        assert client.get("/api/admin/dead-letters/", params={"limit": 5000}).status_code == 422


class TestOps:
    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "ok"}

    def test_metrics_snapshot(self, client, db):
        enrollment = create_enrollment(db)
        client.post("/api/webhooks/lemlist", json=lemlist_payload(enrollment.id))
        snapshot = client.get("/api/admin/metrics").json()
        assert snapshot["counters"]['events_received_total{provider="lemlist"}'] == 1
        assert snapshot["counters"]['events_succeeded_total{event_type="sent"}'] == 1
