"""Tests for the download orchestrator, configuration and command line."""

import json

import pytest
import requests

from entry_processor import IMAGES
from kidsnote_api import (
    AuthError,
    Child,
    JsonSessionStore,
    KidsNoteClient,
    KidsNoteError,
    MemorySessionStore,
    SessionExpiredError,
    SessionProvider,
    SessionRequiredError,
    StorageError,
)
from kidsnote_downloader import (
    DownloaderConfig,
    DownloadOrchestrator,
    find_session_cookie,
    load_config,
    main,
    prepare_output_dir,
    select_children,
)
from tests.conftest import LOGIN_PAGE, login_responses, make_response, media_response

ME_INFO = {"children": [{"id": 11, "name": "Kim"}, {"id": 12, "name": "Lee"}]}


def report_listing(*records, has_next=False):
    return make_response(json_data={"results": list(records), "next": "n" if has_next else None})


def report_record(entry_id, day, image_ids, child_name="Kim"):
    return {
        "id": entry_id,
        "date_written": day,
        "class_name": "ClassA",
        "child_name": child_name,
        "attached_images": [
            {
                "id": i,
                "original": f"https://cdn.kidsnote.com/{i}.jpg",
                "original_file_name": "p.jpg",
            }
            for i in image_ids
        ],
        "attached_video": None,
    }


@pytest.fixture
def orchestrator(client, tmp_path, sleep):
    messages = []
    orchestrator = DownloadOrchestrator(
        client, [tmp_path / "out"], on_log=messages.append, sleep=sleep
    )
    orchestrator.messages = messages
    return orchestrator


class TestOutputDirectory:
    def test_first_usable_candidate_wins(self, tmp_path):
        blocked = tmp_path / "blocked"
        blocked.write_text("not a directory")

        chosen = prepare_output_dir([blocked / "KidsNote", tmp_path / "fallback"])

        assert chosen == tmp_path / "fallback"
        assert chosen.is_dir()
        assert list(chosen.iterdir()) == []

    def test_all_candidates_failing(self, tmp_path):
        blocked = tmp_path / "blocked"
        blocked.write_text("not a directory")

        with pytest.raises(StorageError, match="No writable download directory"):
            prepare_output_dir([blocked / "a", blocked / "b"])


class TestOrchestrator:
    def test_login_and_download_two_entries_in_date_order(self, orchestrator, http, store, sleep):
        http.add(
            *login_responses("sess-42"),
            make_response(json_data=ME_INFO),
            report_listing(
                report_record(2, "2024-01-16", [202]),
                report_record(1, "2024-01-15", [101]),
            ),
            media_response(b"image-101"),
            media_response(b"image-202"),
        )

        orchestrator.ensure_session("parent", "secret")
        children = orchestrator.resolve_children(["1"])
        summary = orchestrator.run([c.id for c in children], IMAGES, is_report=True)

        out = summary.output_dir
        assert store.load() == "sess-42"
        assert http.urls()[-2:] == [
            "https://cdn.kidsnote.com/101.jpg",
            "https://cdn.kidsnote.com/202.jpg",
        ]
        assert (out / "2024년01년15일-ClassA-Kim-101.jpg").read_bytes() == b"image-101"
        assert (out / "2024년01년16일-ClassA-Kim-202.jpg").read_bytes() == b"image-202"
        assert summary.totals() == {"downloaded": 2, "skipped": 0, "failed": 0}
        assert summary.reports[0].child == Child("11", "Kim", 1)

    def test_unwritable_output_dir_falls_back_after_login(self, http, tmp_path, sleep):
        blocked = tmp_path / "blocked"
        blocked.write_text("not a directory")
        store = JsonSessionStore(blocked / "out" / ".kidsnote_session.json")
        client = KidsNoteClient(SessionProvider(store), http=http)
        orchestrator = DownloadOrchestrator(
            client, [blocked / "out", tmp_path / "fallback"], sleep=sleep
        )
        http.add(
            *login_responses("sess-42"),
            make_response(json_data=ME_INFO),
            report_listing(report_record(1, "2024-01-15", [101])),
            media_response(b"image-101"),
        )

        session = orchestrator.ensure_session("parent", "secret")
        summary = orchestrator.run(["11"], IMAGES)

        assert session.session_id == "sess-42"
        assert summary.output_dir == tmp_path / "fallback"
        assert (summary.output_dir / "2024년01년15일-ClassA-Kim-101.jpg").exists()

    def test_wrong_password_persists_nothing(self, orchestrator, http, store):
        http.add(
            make_response(200, body=LOGIN_PAGE),
            make_response(200, body="Invalid username or password"),
        )

        with pytest.raises(AuthError):
            orchestrator.ensure_session("parent", "wrong")

        assert store.load() is None
        with pytest.raises(SessionRequiredError):
            orchestrator.run(["11"], IMAGES)

    def test_reuses_stored_session(self, client, http, store, orchestrator):
        store.save("stored")
        http.add(make_response(json_data=ME_INFO))

        session = orchestrator.ensure_session()

        assert session.session_id == "stored"
        assert http.urls() == ["https://www.kidsnote.com/api/v1_2/me/info"]
        assert [c.name for c in orchestrator.children] == ["Kim", "Lee"]

    def test_expired_stored_session_logs_in_again(self, orchestrator, http, store):
        store.save("stale")
        http.add(make_response(401, json_data={}), *login_responses("fresh"))

        session = orchestrator.ensure_session("parent", "secret")

        assert session.session_id == "fresh"
        assert store.load() == "fresh"

    def test_expired_session_without_credentials(self, orchestrator, http, store):
        store.save("stale")
        http.add(make_response(401, json_data={}))

        with pytest.raises(SessionExpiredError):
            orchestrator.ensure_session()

    def test_no_session_and_no_credentials(self, orchestrator):
        with pytest.raises(SessionRequiredError):
            orchestrator.ensure_session()

    def test_server_error_skips_child_and_continues(self, client, orchestrator, http):
        client.use_session("sess")
        http.add(
            make_response(json_data=ME_INFO),
            make_response(500, body="oops"),
            report_listing(report_record(1, "2024-01-15", [7], child_name="Lee")),
            media_response(b"seven"),
        )

        summary = orchestrator.run(["11", "12"], IMAGES)

        assert "HTTP 500" in summary.reports[0].error
        assert summary.reports[1].error is None
        assert summary.reports[1].stats.downloaded == 1
        assert [r.child.id for r in summary.failed_children] == ["11"]

    def test_network_error_skips_child_and_continues(self, client, orchestrator, http):
        client.use_session("sess")
        http.add(
            make_response(json_data=ME_INFO),
            requests.ConnectionError("connection reset"),
            report_listing(report_record(1, "2024-01-15", [7], child_name="Lee")),
            media_response(b"seven"),
        )

        summary = orchestrator.run(["11", "12"], IMAGES)

        assert "connection reset" in summary.reports[0].error
        assert summary.reports[1].stats.downloaded == 1
        assert [r.child.id for r in summary.failed_children] == ["11"]
        assert any(m.startswith("Error while processing Kim") for m in orchestrator.messages)

    def test_html_listing_skips_child_and_continues(self, client, orchestrator, http):
        client.use_session("sess")
        http.add(
            make_response(json_data=ME_INFO),
            make_response(200, body="<html>Scheduled maintenance</html>"),
            report_listing(report_record(1, "2024-01-15", [7], child_name="Lee")),
            media_response(b"seven"),
        )

        summary = orchestrator.run(["11", "12"], IMAGES)

        assert "Expected JSON" in summary.reports[0].error
        assert summary.reports[1].error is None
        assert summary.reports[1].stats.downloaded == 1

    def test_expired_session_aborts_run(self, client, orchestrator, http):
        client.use_session("sess")
        http.add(make_response(json_data=ME_INFO), make_response(401, json_data={}))

        with pytest.raises(SessionExpiredError):
            orchestrator.run(["11", "12"], IMAGES)

        assert len(http.calls) == 2

    def test_unknown_child_id_aborts_before_fetching(self, client, orchestrator, http):
        client.use_session("sess")
        http.add(make_response(json_data=ME_INFO))

        with pytest.raises(KidsNoteError, match="Unknown child: 99"):
            orchestrator.run(["11", "99"], IMAGES)

        assert len(http.calls) == 1

    def test_cancel_takes_effect_between_children(self, client, tmp_path, http, sleep):
        client.use_session("sess")
        http.add(
            make_response(json_data=ME_INFO),
            report_listing(report_record(1, "2024-01-15", [7])),
            media_response(b"seven"),
        )

        def on_log(message):
            if message.startswith("Processing Kim (11)"):
                orchestrator.cancel()

        orchestrator = DownloadOrchestrator(client, [tmp_path], on_log=on_log, sleep=sleep)
        summary = orchestrator.run(["11", "12"], IMAGES)

        assert summary.cancelled
        assert [r.child.id for r in summary.reports] == ["11"]
        assert summary.reports[0].stats.downloaded == 1

    def test_dry_run_downloads_nothing(self, client, orchestrator, http):
        client.use_session("sess")
        http.add(
            make_response(json_data=ME_INFO),
            report_listing(report_record(1, "2024-01-15", [7, 8])),
        )

        summary = orchestrator.run(["11"], IMAGES, dry_run=True)

        assert [t.file_name for t in summary.reports[0].planned] == [
            "2024년01년15일-ClassA-Kim-7.jpg",
            "2024년01년15일-ClassA-Kim-8.jpg",
        ]
        assert summary.reports[0].stats is None
        assert len(http.calls) == 2

    def test_resolve_children(self, client, orchestrator, http):
        client.use_session("sess")
        http.add(make_response(json_data=ME_INFO))

        assert [c.id for c in orchestrator.resolve_children(["all"])] == ["11", "12"]
        assert [c.id for c in orchestrator.resolve_children(["12", "1"])] == ["12", "11"]
        with pytest.raises(KidsNoteError, match="Unknown child"):
            orchestrator.resolve_children(["99"])


class TestConfig:
    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        config = load_config()

        assert config == DownloaderConfig()
        assert config.retry_policy.max_attempts == 5
        assert config.retry_policy.backoff == 5.0

    def test_yaml_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".kidsnote.yaml").write_text(
            "output_dir: ~/KidsNote\ncontent_type: videos\nsource: albums\n"
            "retry_delay: 2\nchildren: all\nunknown_key: 1\n"
        )

        config = load_config()

        assert config.output_dir == "~/KidsNote"
        assert config.content_type == "videos"
        assert config.source == "albums"
        assert config.retry_policy.backoff == 2
        assert config.children == ["all"]

    def test_json_file(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"page_size": 50, "username": "parent"}))

        config = load_config(path)

        assert config.page_size == 50
        assert config.username == "parent"

    def test_invalid_content_type(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"content_type": "documents"}))

        with pytest.raises(ValueError):
            load_config(path)

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")


class TestCli:
    def test_find_session_cookie(self):
        cookies = [
            {"name": "csrftoken", "value": "x", "domain": "www.kidsnote.com"},
            {"name": "sessionid", "value": "other", "domain": "example.com"},
            {"name": "sessionid", "value": "abc", "domain": ".kidsnote.com"},
        ]
        assert find_session_cookie(cookies) == "abc"
        assert find_session_cookie([]) is None

    def test_select_single_child_without_prompt(self):
        kim = Child("11", "Kim", 1)
        assert select_children([kim]) == [kim]

    def test_select_children_prompt(self, monkeypatch):
        children = [Child("11", "Kim", 1), Child("12", "Lee", 2)]
        answers = iter(["5", "2,1,2"])
        monkeypatch.setattr("builtins.input", lambda prompt: next(answers))

        assert select_children(children) == [children[1], children[0]]

    def test_logout_removes_saved_session(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        JsonSessionStore(tmp_path / "out" / ".kidsnote_session.json").save("abc")

        main(["--logout", "--output", str(tmp_path / "out")])

        assert not (tmp_path / "out" / ".kidsnote_session.json").exists()
        assert "Logged out" in capsys.readouterr().out

    def test_missing_credentials_exit(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr("builtins.input", lambda prompt: "")
        monkeypatch.setattr("getpass.getpass", lambda prompt: "")

        with pytest.raises(SystemExit) as excinfo:
            main(["--output", str(tmp_path / "out"), "--username", ""])

        assert excinfo.value.code == 1


def test_client_fixture_uses_memory_store(client):
    assert isinstance(client, KidsNoteClient)
    assert isinstance(client.sessions, SessionProvider)
    assert isinstance(client.sessions.store, MemorySessionStore)


@pytest.fixture(autouse=True)
def quiet_cli(monkeypatch):
    for name in ("KIDSNOTE_USERNAME", "KIDSNOTE_PASSWORD", "KIDSNOTE_SESSION_ID"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("kidsnote_downloader.setup_logging", lambda debug=False: None)
