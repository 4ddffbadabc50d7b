from __future__ import annotations

from conftest import advance_to, start_session


def record(session_id: str, question_id: str, answer, section: str = "listening", **extra):
	return {"sessionId": session_id, "questionId": question_id, "section": section, "answer": answer, **extra}


def test_submit_answer_stores_record(client):
	sid = start_session(client)["id"]
	res = client.post("/api/test/submit-answer", json=record(sid, "q1", "B", timeSpent=12))
	assert res.status_code == 200
	body = res.json()
	assert body["duplicate"] is False
	assert body["answer"]["answer"] == "B"
	assert body["answer"]["timeSpent"] == 12


def test_first_answer_wins(client):
	sid = start_session(client)["id"]
	client.post("/api/test/submit-answer", json=record(sid, "q1", "B"))
	res = client.post("/api/test/submit-answer", json=record(sid, "q1", "C"))
	assert res.status_code == 200
	assert res.json()["duplicate"] is True
	assert res.json()["answer"]["answer"] == "B"
	answers = client.get(f"/api/sessions/{sid}/answers").json()
	assert [a["answer"] for a in answers] == ["B"]


def test_idempotency_key_replay_returns_stored_record(client):
	sid = start_session(client)["id"]
	first = client.post("/api/test/submit-answer", json=record(sid, "q1", "B", idempotencyKey="k-1")).json()
	again = client.post("/api/test/submit-answer", json=record(sid, "q1", "B", idempotencyKey="k-1")).json()
	assert again["duplicate"] is True
	assert again["answer"]["id"] == first["answer"]["id"]


def test_idempotency_key_cannot_cross_sessions(client):
	first = start_session(client)["id"]
	second = start_session(client)["id"]
	client.post("/api/test/submit-answer", json=record(first, "q1", "B", idempotencyKey="k-1"))
	res = client.post("/api/test/submit-answer", json=record(second, "q1", "B", idempotencyKey="k-1"))
	assert res.status_code == 409


def test_answers_only_for_current_section(client):
	sid = start_session(client)["id"]
	res = client.post("/api/test/submit-answer", json=record(sid, "r1", "true", section="reading"))
	assert res.status_code == 409
	advance_to(client, sid, "reading")
	res = client.post("/api/test/submit-answer", json=record(sid, "q1", "B"))
	assert res.status_code == 409
	assert res.json()["detail"] == "Answers for listening are closed; session is on reading"


def test_batch_submit_counts_duplicates(client):
	sid = start_session(client)["id"]
	client.post("/api/test/submit-answer", json=record(sid, "q1", "B"))
	res = client.post("/api/test/submit-answers", json={"answers": [record(sid, "q1", "D"), record(sid, "q2", "museum")]})
	assert res.status_code == 200
	body = res.json()
	assert body["created"] == 1
	assert body["duplicates"] == 1
	assert [a["answer"] for a in body["answers"]] == ["B", "museum"]


def test_batch_must_target_one_session(client):
	first = start_session(client)["id"]
	second = start_session(client)["id"]
	res = client.post("/api/test/submit-answers", json={"answers": [record(first, "q1", "B"), record(second, "q1", "B")]})
	assert res.status_code == 400


def test_legacy_answers_route(client):
	sid = start_session(client)["id"]
	res = client.post("/api/answers", json=record(sid, "q9", "harbour"))
	assert res.status_code == 200
	assert res.json()["answer"]["questionId"] == "q9"


def test_cannot_answer_someone_elses_session(client, auth):
	sid = start_session(client)["id"]
	auth.student("mallory")
	assert client.post("/api/test/submit-answer", json=record(sid, "q1", "B")).status_code == 403


def test_batch_is_stored_all_or_nothing(client):
	sid = start_session(client)["id"]
	res = client.post("/api/test/submit-answers", json={"answers": [record(sid, "q1", "B"), record(sid, "r1", "true", section="reading")]})
	assert res.status_code == 409
	assert res.json()["detail"] == "Answers for reading are closed; session is on listening"
	assert client.get(f"/api/sessions/{sid}/answers").json() == []


def test_batch_repeating_a_question_keeps_the_first(client):
	sid = start_session(client)["id"]
	res = client.post("/api/test/submit-answers", json={"answers": [record(sid, "q1", "B"), record(sid, "q1", "C")]})
	assert res.status_code == 200
	body = res.json()
	assert (body["created"], body["duplicates"]) == (1, 1)
	assert [a["answer"] for a in body["answers"]] == ["B", "B"]


def draft(session_id: str, question_id: str, answer, section: str = "listening"):
	return {"sessionId": session_id, "questionId": question_id, "section": section, "answer": answer}


def test_draft_keeps_latest_value_until_submitted(client):
	sid = start_session(client)["id"]
	assert client.put("/api/test/draft", json=draft(sid, "q1", "mus")).status_code == 200
	res = client.put("/api/test/draft", json=draft(sid, "q1", "museum"))
	assert res.status_code == 200
	assert res.json()["answer"] == "museum"
	drafts = client.get(f"/api/sessions/{sid}/drafts").json()
	assert [(d["questionId"], d["answer"]) for d in drafts] == [("q1", "museum")]

	client.post("/api/test/submit-answer", json=record(sid, "q1", "museum"))
	assert client.get(f"/api/sessions/{sid}/drafts").json() == []
	res = client.put("/api/test/draft", json=draft(sid, "q1", "harbour"))
	assert res.status_code == 409


def test_draft_for_closed_section_is_refused(client):
	sid = start_session(client)["id"]
	res = client.put("/api/test/draft", json=draft(sid, "r1", "true", section="reading"))
	assert res.status_code == 409
