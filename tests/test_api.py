"""Tests for REST API endpoints."""

from tests.factories import add_encounter, add_patient, add_report


async def test_health(async_client):
    resp = await async_client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


class TestStartTriage:
    async def test_existing_patient(self, async_client, db, services):
        """The placeholder is returned at once and filled in by the workflow."""
        await add_patient(db)

        resp = await async_client.post("/api/triage", json={
            "patient_id": "pat-1",
            "symptoms": "Fever and productive cough",
            "vital_signs": {"heart_rate": 108, "temperature": 38.9},
        })

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "PROCESSING"
        assert data["patient_id"] == "pat-1"
        assert data["report_id"].startswith("RPT-")

        await services.bus.drain()

        report = await async_client.get(f"/api/triage/{data['report_id']}")
        assert report.status_code == 200
        body = report.json()
        assert body["status"] == "DRAFT"
        assert body["encounter_id"] == data["encounter_id"]
        assert body["urgency_level"] == "MEDIUM"
        assert body["suggested_icd10"][0] == "J18.9 - Pneumonia, unspecified organism (Primary)"

        encounter = await db.fetch_one("SELECT * FROM encounters WHERE id = ?", (data["encounter_id"],))
        assert encounter["patient_id"] == "pat-1"
        assert '"heart_rate":108.0' in encounter["vital_signs"]

    async def test_new_patient(self, async_client, db, services):
        resp = await async_client.post("/api/triage", json={
            "new_patient": {"name": "Sam Rivera", "date_of_birth": "1990-06-15", "gender": "Male"},
            "symptoms": "Twisted ankle",
        })

        assert resp.status_code == 200
        patient_id = resp.json()["patient_id"]
        row = await db.fetch_one("SELECT name, date_of_birth FROM patients WHERE id = ?", (patient_id,))
        assert row["name"] == "Sam Rivera"
        assert row["date_of_birth"] == "1990-06-15"
        await services.bus.drain()

    async def test_malformed_date_of_birth_rejected(self, async_client, db):
        """A patient with an unparseable birth date is never created."""
        resp = await async_client.post("/api/triage", json={
            "new_patient": {"name": "Ada Byrne", "date_of_birth": "03/15/1950", "gender": "Female"},
            "symptoms": "Chest pain",
        })

        assert resp.status_code == 422
        assert await db.fetch_one("SELECT id FROM patients WHERE name = ?", ("Ada Byrne",)) is None

    async def test_future_date_of_birth_rejected(self, async_client):
        resp = await async_client.post("/api/triage", json={
            "new_patient": {"name": "Ada Byrne", "date_of_birth": "2999-01-01", "gender": "Female"},
            "symptoms": "Chest pain",
        })

        assert resp.status_code == 422

    async def test_blank_symptoms(self, async_client, db):
        await add_patient(db)

        resp = await async_client.post("/api/triage", json={"patient_id": "pat-1", "symptoms": "   "})

        assert resp.status_code == 400

    async def test_unknown_patient(self, async_client):
        resp = await async_client.post("/api/triage", json={"patient_id": "nobody", "symptoms": "Cough"})
        assert resp.status_code == 404

    async def test_no_patient_given(self, async_client):
        resp = await async_client.post("/api/triage", json={"symptoms": "Cough"})
        assert resp.status_code == 400


async def test_get_report_not_found(async_client):
    resp = await async_client.get("/api/triage/RPT-NOPE")
    assert resp.status_code == 404


class TestReportReview:
    async def test_approve_draft(self, async_client, db):
        await add_report(db, "RPT-1", status="DRAFT")

        resp = await async_client.post("/api/reports/RPT-1/approve")

        assert resp.status_code == 200
        assert resp.json()["status"] == "FINALIZED"

    async def test_approve_non_draft_conflicts(self, async_client, db):
        await add_report(db, "RPT-1", status="PROCESSING")

        resp = await async_client.post("/api/reports/RPT-1/approve")

        assert resp.status_code == 409

    async def test_approve_missing(self, async_client):
        resp = await async_client.post("/api/reports/RPT-NOPE/approve")
        assert resp.status_code == 404

    async def test_delete(self, async_client, db):
        await add_report(db, "RPT-1", status="DRAFT")

        resp = await async_client.delete("/api/reports/RPT-1")

        assert resp.status_code == 200
        assert resp.json()["status"] == "DELETED"


class TestFullAnalysis:
    async def test_queues_manual_analysis(self, async_client, db, services):
        await add_patient(db)
        await add_encounter(db)
        await add_report(db, "RPT-1", status="DRAFT")

        resp = await async_client.post("/api/analysis/enc-1")

        assert resp.status_code == 200
        assert resp.json() == {"encounter_id": "enc-1", "patient_id": "pat-1", "status": "QUEUED"}

        await services.bus.drain()
        row = await db.fetch_one("SELECT summary FROM triage_reports WHERE id = ?", ("RPT-1",))
        assert row["summary"] == "Generated summary."

    async def test_unknown_encounter(self, async_client):
        resp = await async_client.post("/api/analysis/enc-missing")
        assert resp.status_code == 404


class TestScans:
    async def test_register_scan(self, async_client, db, services, vision):
        await add_patient(db)
        await add_encounter(db)

        resp = await async_client.post("/api/scans", json={
            "encounter_id": "enc-1",
            "type": "x-ray",
            "body_part": "Chest",
            "file_url": "https://bucket.s3.amazonaws.com/scans/new.png",
        })

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "QUEUED"

        await services.bus.drain()
        row = await db.fetch_one("SELECT type, analysis FROM scans WHERE id = ?", (data["id"],))
        assert row["type"] == "X-RAY"
        assert row["analysis"] is not None
        vision.analyze_image_json.assert_awaited_once()

    async def test_unknown_encounter(self, async_client):
        resp = await async_client.post("/api/scans", json={
            "encounter_id": "enc-missing",
            "type": "CT",
            "file_url": "https://bucket/x.png",
        })
        assert resp.status_code == 404


class TestQuickAssessment:
    async def test_assessment(self, async_client):
        resp = await async_client.post("/api/triage/quick-assessment", json={
            "symptoms": "High fever and confusion",
            "age": 81,
            "gender": "Female",
        })

        assert resp.status_code == 200
        assert resp.json() == {"urgency": "HIGH", "key_considerations": ["Rule out sepsis"]}

    async def test_blank_symptoms(self, async_client):
        resp = await async_client.post("/api/triage/quick-assessment", json={
            "symptoms": "",
            "age": 30,
            "gender": "Male",
        })
        assert resp.status_code == 400
