from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from conftest import add_question, advance_to, start_session
from fastapi import HTTPException

from proficiency import models
from proficiency.cleanup import purge_archived_sessions
from proficiency.store import SessionStore

ESSAY = " ".join(["word"] * 260)


def test_create_session_defaults(client):
	session = start_session(client)
	assert session["currentSection"] == "listening"
	assert session["status"] == "in_progress"
	assert session["timeRemaining"] == 3 * 60 * 60
	assert session["userId"] == "alice"
	assert not any(session[f"{s}Completed"] for s in ("listening", "reading", "writing", "speaking"))


def test_only_owner_or_admin_can_read(client, auth):
	session = start_session(client)
	auth.student("mallory")
	assert client.get(f"/api/sessions/{session['id']}").status_code == 403
	auth.admin()
	assert client.get(f"/api/sessions/{session['id']}").status_code == 200


def test_unknown_session_is_404(client):
	assert client.get("/api/sessions/doesnotexist").status_code == 404


def test_advance_moves_one_section_and_sets_flag(client):
	session = start_session(client)
	res = client.post(f"/api/sessions/{session['id']}/advance", json={"fromSection": "listening"})
	assert res.status_code == 200
	body = res.json()
	assert body["session"]["currentSection"] == "reading"
	assert body["session"]["listeningCompleted"] is True
	assert body["route"] == f"/test/{session['id']}/reading"
	assert body["replayed"] is False


def test_replayed_completion_is_idempotent(client):
	session = start_session(client)
	client.post(f"/api/sessions/{session['id']}/advance", json={"fromSection": "listening"})
	res = client.post(f"/api/sessions/{session['id']}/advance", json={"fromSection": "listening"})
	assert res.status_code == 200
	assert res.json()["replayed"] is True
	assert res.json()["session"]["currentSection"] == "reading"


def test_only_one_of_two_concurrent_advances_wins(SessionLocal):
	first, second = SessionLocal(), SessionLocal()
	try:
		sid = SessionStore(first).create("alice").id
		stale = SessionStore(second).require(sid)
		fresh = SessionStore(first).require(sid)
		assert stale.current_section == "listening"

		SessionStore(first).advance_from(fresh, "listening")
		with pytest.raises(HTTPException) as exc:
			SessionStore(second).advance_from(stale, "listening")
		assert exc.value.status_code == 409

		second.expire_all()
		row = SessionStore(second).require(sid)
		assert row.current_section == "reading"
		assert row.listening_completed is True
		assert row.reading_completed is False
	finally:
		first.close()
		second.close()


def test_completing_a_future_section_conflicts(client):
	session = start_session(client)
	res = client.post(f"/api/sessions/{session['id']}/advance", json={"fromSection": "writing"})
	assert res.status_code == 409
	assert client.get(f"/api/sessions/{session['id']}").json()["currentSection"] == "listening"


def test_patch_cannot_skip_or_regress(client):
	session = start_session(client)
	sid = session["id"]
	assert client.patch(f"/api/sessions/{sid}", json={"currentSection": "writing"}).status_code == 409
	res = client.patch(f"/api/sessions/{sid}", json={"currentSection": "reading"})
	assert res.status_code == 200
	assert res.json()["listeningCompleted"] is True
	assert client.patch(f"/api/sessions/{sid}", json={"currentSection": "listening"}).status_code == 409
	assert client.get(f"/api/sessions/{sid}").json()["currentSection"] == "reading"


def test_patch_status_completed_requires_finished_test(client):
	session = start_session(client)
	sid = session["id"]
	assert client.patch(f"/api/sessions/{sid}", json={"status": "completed"}).status_code == 409
	res = client.patch(f"/api/sessions/{sid}", json={"status": "paused", "timeRemaining": 5000})
	assert res.status_code == 200
	assert res.json()["status"] == "paused"
	assert res.json()["timeRemaining"] == 5000


def test_enter_redirects_speaking_candidate_away_from_earlier_pages(client):
	session = start_session(client)
	sid = session["id"]
	advance_to(client, sid, "speaking")
	for section in ("listening", "reading"):
		body = client.get(f"/api/sessions/{sid}/enter/{section}").json()
		assert body["allowed"] is False
		assert body["redirect"] == f"/test/{sid}/speaking"
	body = client.get(f"/api/sessions/{sid}/enter/speaking").json()
	assert body["allowed"] is True
	assert body["redirect"] is None
	assert client.get(f"/api/sessions/{sid}/enter/grammar").status_code == 400


def test_score_listening_section(client, db):
	q1 = add_question(db, "listening", ["B"], question_type="multiple_choice")
	q2 = add_question(db, "listening", ["museum"])
	session = start_session(client)
	sid = session["id"]
	for qid, answer in ((q1.id, "B)"), (q2.id, "library")):
		res = client.post("/api/test/submit-answer", json={"sessionId": sid, "questionId": qid, "section": "listening", "answer": answer})
		assert res.status_code == 200
	res = client.post(f"/api/sessions/{sid}/score/listening")
	assert res.status_code == 200
	body = res.json()
	assert body["totalQuestions"] == 2
	assert body["correctAnswers"] == 1
	assert body["band"] == 1.0
	assert client.get(f"/api/sessions/{sid}").json()["listeningBand"] == 1.0
	marked = {a["questionId"]: (a["isCorrect"], a["score"]) for a in client.get(f"/api/sessions/{sid}/answers").json()}
	assert marked == {q1.id: (True, 1.0), q2.id: (False, 0.0)}


def test_score_subjective_section_is_rejected(client):
	session = start_session(client)
	assert client.post(f"/api/sessions/{session['id']}/score/writing").status_code == 400


def test_calculate_overall_needs_all_bands(client):
	session = start_session(client)
	res = client.post(f"/api/sessions/{session['id']}/calculate-overall")
	assert res.status_code == 400
	assert res.json()["detail"] == "Not all sections completed"


def test_full_test_flow_to_archived_results(client, db):
	q1 = add_question(db, "listening", ["B"], question_type="multiple_choice")
	session = start_session(client)
	sid = session["id"]
	client.post("/api/test/submit-answer", json={"sessionId": sid, "questionId": q1.id, "section": "listening", "answer": "B"})
	advance_to(client, sid, "writing")

	res = client.post("/api/ai/evaluate/writing", json={"sessionId": sid, "questionId": "writing-task-2", "content": ESSAY})
	assert res.status_code == 200, res.text
	advance_to(client, sid, "speaking")
	res = client.post("/api/ai/evaluate/speaking", json={"sessionId": sid, "questionId": "speaking-part-1", "transcript": "I live in a small town."})
	assert res.status_code == 200, res.text
	assert client.get(f"/api/sessions/{sid}/results").status_code == 409
	advance_to(client, sid, "completed")

	res = client.post(f"/api/sessions/{sid}/calculate-scores")
	assert res.status_code == 200
	scores = res.json()["scores"]
	assert scores["listeningBand"] == 1.0
	assert scores["readingBand"] == 0.0
	assert scores["writingBand"] == 7.0
	assert scores["speakingBand"] == 7.0
	assert scores["overallBand"] == 4.0
	assert scores["status"] == "completed"

	res = client.get(f"/api/sessions/{sid}/results")
	assert res.status_code == 200
	body = res.json()
	assert body["session"]["archivedAt"] is not None
	assert body["descriptor"] == "Limited User"
	assert len(body["evaluations"]) == 2
	assert body["summary"]["sectionsCompleted"] == 4


def test_purge_removes_only_old_archived_sessions(db):
	old = models.TestSession(user_id="alice", archived_at=datetime.utcnow() - timedelta(days=40), status="completed", current_section="completed")
	recent = models.TestSession(user_id="alice", archived_at=datetime.utcnow() - timedelta(days=2), status="completed", current_section="completed")
	active = models.TestSession(user_id="bob")
	db.add_all([old, recent, active])
	db.flush()
	db.add(models.TestAnswer(session_id=old.id, question_id="q1", section="listening", answer="B"))
	db.add(models.AnswerDraft(session_id=old.id, question_id="q2", section="listening", answer="mus"))
	db.commit()

	assert purge_archived_sessions(db, retention_days=30) == 1
	remaining = {s.id for s in db.query(models.TestSession).all()}
	assert remaining == {recent.id, active.id}
	assert db.query(models.TestAnswer).count() == 0
	assert db.query(models.AnswerDraft).count() == 0
