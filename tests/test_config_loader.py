from pathlib import Path

import pytest
from pydantic import ValidationError

from flymark.config import COOKIE_ENV_VAR, PASSWORD_ENV_VAR, USERNAME_ENV_VAR
from flymark.config_loader import (
    Credentials,
    MarkerConfig,
    find_submissions,
    load_config,
    resolve_credentials,
)

CONFIG_YAML = """
scheme_path: scheme.txt
course: cs1521
session: 22T1
assignment: exam
submissions_dir: submissions
reports_dir: ~/marks
concurrency: 8
default_timeout: 45
targets:
  - student: z1111111
    submission: submissions/z1111111
    skip: [style]
  - student: z2222222
    submission: /srv/exam/z2222222
"""


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path: Path) -> None:
    for name in (USERNAME_ENV_VAR, PASSWORD_ENV_VAR, COOKIE_ENV_VAR):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    (tmp_path / "home").mkdir()


def test_load_config_resolves_paths_relative_to_file(tmp_path: Path) -> None:
    config_path = tmp_path / "flymark.yml"
    config_path.write_text(CONFIG_YAML, encoding="utf-8")

    config = load_config(config_path)

    assert config.scheme_path == tmp_path / "scheme.txt"
    assert config.submissions_dir == tmp_path / "submissions"
    assert config.reports_dir == tmp_path / "home" / "marks"
    assert config.concurrency == 8
    assert config.run_settings().default_timeout == 45
    assert config.run_settings().concurrency_limit == 8

    first, second = config.student_targets()
    assert first.student_id == "z1111111"
    assert first.submission == tmp_path / "submissions" / "z1111111"
    assert first.skip == frozenset({"style"})
    assert second.submission == Path("/srv/exam/z2222222")


def test_load_config_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "flymark.yml"
    config_path.write_text("scheme_path: s.txt\ncourse: cs1511\nsession: 23T3\n", encoding="utf-8")

    config = load_config(config_path)

    assert config.endpoint_url == "https://cgi.cse.unsw.edu.au/~cs1511/23T3/imark/server.cgi/"
    assert config.student_targets() == []
    assert config.dry_run is False
    endpoint = config.endpoint_config()
    assert endpoint.marker == "flymark"
    assert endpoint.mark_name == "performance"
    assert endpoint.attempts == 3


def test_load_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yml")


def test_load_config_rejects_non_mapping(tmp_path: Path) -> None:
    config_path = tmp_path / "flymark.yml"
    config_path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_config(config_path)


def test_load_config_validates_fields(tmp_path: Path) -> None:
    config_path = tmp_path / "flymark.yml"
    config_path.write_text("scheme_path: s.txt\ncourse: cs1521\nsession: 22T1\nconcurrency: 0\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        load_config(config_path)


def test_find_submissions_skips_hidden_and_files(tmp_path: Path) -> None:
    for name in ["z3", "z1", ".git", "__pycache__"]:
        (tmp_path / name).mkdir()
    (tmp_path / "notes.txt").write_text("ignore me")

    targets = find_submissions(tmp_path)

    assert [t.student_id for t in targets] == ["z1", "z3"]
    assert targets[0].submission == (tmp_path / "z1").resolve()


def test_submissions_dir_used_without_explicit_targets(tmp_path: Path) -> None:
    (tmp_path / "z9").mkdir()
    config = MarkerConfig(scheme_path=tmp_path / "s.txt", course="cs1521", session="22T1", submissions_dir=tmp_path)

    assert [t.student_id for t in config.student_targets()] == ["z9"]


def test_endpoint_config_attaches_credentials() -> None:
    config = MarkerConfig(scheme_path=Path("s.txt"), course="cs1521", session="22T1", endpoint="http://localhost/imark")
    credentials = Credentials(username="andrewt", password="hunter2", cookie="c=1")

    endpoint = config.endpoint_config(credentials)

    assert endpoint.url == "http://localhost/imark"
    assert endpoint.marker == "andrewt"
    assert endpoint.password.get_secret_value() == "hunter2"
    assert endpoint.cookie.get_secret_value() == "c=1"
    assert "hunter2" not in repr(endpoint)


def test_credentials_from_environment(monkeypatch) -> None:
    monkeypatch.setenv(USERNAME_ENV_VAR, "marker")
    monkeypatch.setenv(PASSWORD_ENV_VAR, "secret")
    monkeypatch.setenv(COOKIE_ENV_VAR, "session=xyz")

    credentials = resolve_credentials("https://cgi.cse.unsw.edu.au/~cs1521/22T1/imark/server.cgi/")

    assert credentials.username == "marker"
    assert credentials.password.get_secret_value() == "secret"
    assert credentials.cookie.get_secret_value() == "session=xyz"


def test_credentials_from_netrc(tmp_path: Path) -> None:
    netrc_path = tmp_path / "home" / ".netrc"
    netrc_path.write_text("machine cgi.cse.unsw.edu.au login andrewt password hunter2\n", encoding="utf-8")
    netrc_path.chmod(0o600)

    credentials = resolve_credentials("https://cgi.cse.unsw.edu.au/~cs1521/22T1/imark/server.cgi/")

    assert credentials.username == "andrewt"
    assert credentials.password.get_secret_value() == "hunter2"
    assert credentials.cookie is None


def test_no_credentials_found() -> None:
    credentials = resolve_credentials("https://imark.example/")

    assert credentials == Credentials()
