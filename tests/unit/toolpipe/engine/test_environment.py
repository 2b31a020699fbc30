from toolpipe.engine.environment import DEFAULT_ENVIRONMENT, child_environment, merge


def test_defaults_fill_missing_keys():
    merged = merge({}, {"PYTHONUNBUFFERED": "1"})
    assert merged == {"PYTHONUNBUFFERED": "1"}


def test_explicit_value_wins():
    merged = merge({"PYTHONUNBUFFERED": "0", "EXISTING": "1"}, DEFAULT_ENVIRONMENT)
    assert merged == {"PYTHONUNBUFFERED": "0", "EXISTING": "1"}


def test_unrelated_keys_are_kept():
    merged = merge({"PATH": "/bin"}, {"PYTHONUNBUFFERED": "1"})
    assert merged == {"PATH": "/bin", "PYTHONUNBUFFERED": "1"}


def test_merge_does_not_mutate_inputs():
    explicit = {"A": "1"}
    defaults = {"B": "2"}
    merge(explicit, defaults)
    assert explicit == {"A": "1"}
    assert defaults == {"B": "2"}


def test_child_environment_inherits_process_environment(monkeypatch):
    monkeypatch.setenv("TOOLPIPE_MARKER", "present")
    monkeypatch.delenv("PYTHONUNBUFFERED", raising=False)
    env = child_environment()
    assert env["TOOLPIPE_MARKER"] == "present"
    assert env["PYTHONUNBUFFERED"] == DEFAULT_ENVIRONMENT["PYTHONUNBUFFERED"]


def test_child_environment_keeps_callers_value(monkeypatch):
    monkeypatch.setenv("PYTHONUNBUFFERED", "0")
    assert child_environment()["PYTHONUNBUFFERED"] == "0"


def test_child_environment_overrides():
    env = child_environment({"PYTHONUNBUFFERED": "", "EXTRA": "x"}, base={"HOME": "/tmp"})
    assert env == {"HOME": "/tmp", "EXTRA": "x", "PYTHONUNBUFFERED": ""}
