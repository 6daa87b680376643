from app.settings import settings
from tests.conftest import VALID_ISBN13

BOOK_CSV = b"Title,Author,ISBN,Copies\nDune,Frank Herbert,978-0441013593,2\nEmma,Jane Austen,,1\n"


def open_session(client, mode="either"):
    res = client.post("/scan/sessions", json={"mode": mode})
    assert res.status_code == 200
    return res.json()["session_id"]


def test_index(client):
    assert client.get("/").json() == {"ok": True, "service": "library-desk"}


def test_scan_page_served(client):
    res = client.get("/scan")
    assert res.status_code == 200
    assert "Universal Scanner" in res.text


def test_manual_scan_then_cooldown(client):
    session_id = open_session(client, "book")

    first = client.post(f"/scan/sessions/{session_id}/manual", json={"text": VALID_ISBN13}).json()
    assert first["status"] == "accepted"
    assert first["record"]["isbn"] == VALID_ISBN13
    assert first["message"] == f"ISBN: {VALID_ISBN13}"

    second = client.post(f"/scan/sessions/{session_id}/camera", json={"text": VALID_ISBN13}).json()
    assert second["status"] == "ignored"

    state = client.get(f"/scan/sessions/{session_id}").json()
    assert state["state"] == "processing"
    assert client.get("/scan/health").json()["open_sessions"] >= 1


def test_student_code_rejected_in_book_mode(client, student_payload):
    session_id = open_session(client, "book")
    res = client.post(f"/scan/sessions/{session_id}/manual", json={"text": student_payload}).json()
    assert res["status"] == "rejected"
    assert res["reason"] == "student code scanned, expected book"
    assert res["title"] == "Student ID Detected"


def test_keyboard_wedge_over_http(client, monkeypatch):
    monkeypatch.setattr(settings, "keyboard_idle_timeout_ms", 5000)
    session_id = open_session(client)
    for ch in "LIB-000123":
        assert client.post(f"/scan/sessions/{session_id}/keys", json={"key": ch}).json()["status"] == "pending"
    res = client.post(f"/scan/sessions/{session_id}/keys", json={"key": "Enter"}).json()
    assert res["status"] == "accepted"
    assert res["channel"] == "keyboard-wedge"
    assert res["record"]["kind"] == "generic"


def test_typing_in_text_input_not_captured(client):
    session_id = open_session(client)
    res = client.post(f"/scan/sessions/{session_id}/keys", json={"key": "a", "in_text_input": True}).json()
    assert res["status"] == "ignored"
    assert client.get(f"/scan/sessions/{session_id}").json()["buffered_chars"] == 0


def test_unknown_session(client):
    assert client.post("/scan/sessions/nope/manual", json={"text": "x"}).status_code == 404
    assert client.get("/scan/sessions/nope").status_code == 404
    assert client.delete("/scan/sessions/nope").status_code == 404


def test_closed_session_is_gone(client):
    session_id = open_session(client)
    assert client.delete(f"/scan/sessions/{session_id}").json() == {"ok": True}
    assert client.post(f"/scan/sessions/{session_id}/manual", json={"text": VALID_ISBN13}).status_code == 404


def test_book_import_preview_commit_and_repeat(client):
    files = {"file": ("books.csv", BOOK_CSV, "text/csv")}
    preview = client.post("/import/book/preview", files=files).json()
    assert preview["count"] == 2
    assert [r["title"] for r in preview["rows"]] == ["Dune", "Emma"]
    assert preview["already_exists"] == []

    result = client.post("/import/book/commit", json={"rows": preview["rows"]}).json()
    assert (result["success"], result["failed"], result["skipped"]) == (2, 0, 0)

    again = client.post("/import/book/preview", files=files).json()
    assert [r["title"] for r in again["already_exists"]] == ["Dune"]
    assert again["count"] == 1

    recommit = client.post("/import/book/commit", json={"rows": again["rows"] + again["already_exists"]}).json()
    assert recommit["skipped"] == 1
    assert recommit["skipped_items"] == [f"Row 2: Book with ISBN {VALID_ISBN13} already exists"]


def test_student_import_csv(client):
    body = b"full_name,email,division,roll_number\nAlice Johnson,alice@example.com,A,1\n"
    preview = client.post("/import/student/preview", files={"file": ("students.csv", body, "text/csv")}).json()
    assert preview["count"] == 1
    result = client.post("/import/student/commit", json={"rows": preview["rows"]}).json()
    assert result["success"] == 1


def test_import_without_entries(client):
    res = client.post("/import/book/preview", files={"file": ("empty.csv", b"title,author\n", "text/csv")})
    assert res.status_code == 422
    assert res.json()["message"] == "No valid book entries found in empty.csv"


def test_import_unsupported_file(client):
    res = client.post("/import/book/preview", files={"file": ("books.docx", b"PK", "application/octet-stream")})
    assert res.status_code == 415
    assert res.json()["ok"] is False


def test_template_download(client):
    res = client.get("/import/student/template.csv")
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")
    assert "students-template.csv" in res.headers["content-disposition"]
    assert res.text.startswith('"full_name"')


def test_keyboard_burst_keeps_keystroke_order(client):
    session_id = open_session(client)
    keys = [{"key": ch, "at_ms": 1000.0 + i * 4} for i, ch in enumerate("978-0441013593")]
    keys.append({"key": "Enter", "at_ms": 1060.0})

    res = client.post(f"/scan/sessions/{session_id}/keys/burst", json={"keys": keys}).json()

    assert res["status"] == "accepted"
    assert res["record"]["raw_text"] == "978-0441013593"
    assert res["record"]["isbn"] == VALID_ISBN13


def test_keyboard_burst_idle_gap_measured_on_client_clock(client):
    session_id = open_session(client)
    keys = [{"key": ch, "at_ms": float(i)} for i, ch in enumerate("xyz")]
    keys += [{"key": ch, "at_ms": 5000.0 + i} for i, ch in enumerate("LIB-000123")]
    keys.append({"key": "Enter", "at_ms": 5020.0})

    res = client.post(f"/scan/sessions/{session_id}/keys/burst", json={"keys": keys}).json()

    assert res["status"] == "accepted"
    assert res["record"]["raw_text"] == "LIB-000123"


def test_keyboard_burst_ended_idle(client):
    session_id = open_session(client)
    keys = [{"key": ch, "at_ms": float(i)} for i, ch in enumerate("LIB-000123")]
    res = client.post(f"/scan/sessions/{session_id}/keys/burst", json={"keys": keys, "ended_idle": True}).json()
    assert res["status"] == "accepted"
    assert client.get(f"/scan/sessions/{session_id}").json()["buffered_chars"] == 0


def test_scan_page_posts_bursts(client):
    page = client.get("/scan").text
    assert "/keys/burst" in page
    assert f"const IDLE_MS = {settings.keyboard_idle_timeout_ms};" in page
