"""Tests for the HTTP service."""

import time

import pytest
from fastapi.testclient import TestClient

from consensusflow.api import create_app


def _payload(uploads):
    return {
        "files": [
            {"original_name": u.original_name, "stored_path": str(u.stored_path)} for u in uploads
        ]
    }


def _wait_for_idle(client, timeout=30.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not client.get("/health").json()["run_active"]:
            return client.get("/runs/current").json()
        time.sleep(0.05)
    raise AssertionError("pipeline run did not finish in time")


@pytest.fixture
def client(tmp_path, test_config):
    test_config["base_dir"] = str(tmp_path)
    with TestClient(create_app(test_config)) as test_client:
        yield test_client


class TestEndpoints:
    """Test request validation and run state endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["run_active"] is False

    def test_no_current_run(self, client):
        assert client.get("/runs/current").status_code == 404

    def test_cancel_without_run(self, client):
        assert client.post("/runs/current/cancel").status_code == 409

    def test_missing_genome(self, client, make_uploads):
        uploads = make_uploads(["s1_1.fastq.gz", "s1_2.fastq.gz"])
        response = client.post("/runs", json=_payload(uploads))

        assert response.status_code == 400
        assert response.json()["detail"] == "Please upload a .fasta or .fa file."
        assert client.get("/runs/current").status_code == 404

    def test_mismatched_pair(self, client, make_uploads):
        uploads = make_uploads(["ref.fa", "s1_1.fastq.gz", "s2_2.fastq.gz"])
        response = client.post("/runs", json=_payload(uploads))

        assert response.status_code == 400
        assert "s2_2.fastq.gz" in response.json()["detail"]

    def test_genome_without_reads(self, client, make_uploads):
        uploads = make_uploads(["ref.fasta"])
        response = client.post("/runs", json=_payload(uploads))

        assert response.status_code == 400
        assert response.json()["detail"] == "Please upload at least one pair of read files."
        assert client.get("/runs/current").status_code == 404

    def test_sample_name_with_directory_part(self, client, make_uploads, tmp_path):
        genome = make_uploads(["ref.fasta"])[0]
        reads = make_uploads(["x_R1.fastq.gz", "x_R2.fastq.gz"])
        files = [
            {"original_name": genome.original_name, "stored_path": str(genome.stored_path)},
            {"original_name": "sub/x_R1.fastq.gz", "stored_path": str(reads[0].stored_path)},
            {"original_name": "sub/x_R2.fastq.gz", "stored_path": str(reads[1].stored_path)},
        ]

        response = client.post("/runs", json={"files": files})

        assert response.status_code == 400
        assert "sub/x" in response.json()["detail"]
        assert (tmp_path / "x_R1.fastq.gz").exists()
        assert not (tmp_path / "progress.txt").exists()

    def test_invalid_body(self, client):
        assert client.post("/runs", json={"files": [{"original_name": "x"}]}).status_code == 422


class TestRuns:
    """Test starting, following and cancelling runs against fake tools."""

    def test_run_and_replay_progress(self, client, fake_tools, make_uploads):
        uploads = make_uploads(["ref.fasta", "s1_R1.fastq.gz", "s1_R2.fastq.gz"])

        response = client.post("/runs", json=_payload(uploads))

        assert response.status_code == 202
        body = response.json()
        assert body["samples"] == ["s1"]
        assert body["message"] == "Pipeline execution started."
        assert body["run_id"].startswith("run-")

        state = _wait_for_idle(client)
        assert state["status"] == "completed"
        assert state["exit_code"] == 0

        progress = client.get("/progress", params={"follow": "false"})
        assert progress.status_code == 200
        assert progress.headers["content-type"].startswith("text/event-stream")
        lines = [line for line in progress.text.splitlines() if line]
        assert lines[0] == "data: Pipeline started"
        assert "data: Step 0: Building reference genome index" in lines
        assert lines[-1] == "data: Pipeline finished with exit code 0"

    def test_second_run_rejected_then_cancel(self, client, fake_tools, make_uploads):
        (fake_tools / "bowtie2-build").write_text("#!/usr/bin/env bash\nsleep 30\n")
        uploads = make_uploads(["ref.fasta", "s1_1.fastq.gz", "s1_2.fastq.gz"])

        assert client.post("/runs", json=_payload(uploads)).status_code == 202
        second = client.post("/runs", json=_payload(uploads))
        assert second.status_code == 409

        cancelled = client.post("/runs/current/cancel")
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

        state = _wait_for_idle(client)
        assert state["status"] == "cancelled"
        progress = client.get("/progress", params={"follow": "false"}).text
        assert "data: Pipeline cancelled" in progress
