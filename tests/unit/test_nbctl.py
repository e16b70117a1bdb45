import json
import subprocess
import threading

import pytest

from ovnkube import nbctl
from ovnkube.backoff import Backoff, sleep
from ovnkube.exceptions import Cancelled, PermanentDBError, TransientDBError
from ovnkube.nbctl import (
    ToolRunner,
    as_list,
    as_optional,
    decode_rows,
    encode_map,
    encode_set,
)


class FakeRun:
    def __init__(self, returncode=0, stdout="", stderr="", raises=None):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.raises = raises
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        if self.raises is not None:
            raise self.raises
        return subprocess.CompletedProcess(cmd, self.returncode, self.stdout, self.stderr)


@pytest.fixture
def fake_run(monkeypatch):
    def install(**kwargs):
        runner = FakeRun(**kwargs)
        monkeypatch.setattr(nbctl.subprocess, "run", runner)
        return runner

    return install


def test_run_prepends_base_args_and_uses_read_timeout(fake_run):
    run = fake_run(stdout="ok\n")
    tool = ToolRunner("ovn-nbctl", ["--db=tcp:1.2.3.4:6641"], timeout=9, read_timeout=2)

    assert tool.run(["show"], read_only=True) == "ok\n"
    cmd, kwargs = run.calls[0]
    assert cmd == ["ovn-nbctl", "--db=tcp:1.2.3.4:6641", "show"]
    assert kwargs["timeout"] == 2

    tool.run(["ls-add", "sw0"])
    assert run.calls[1][1]["timeout"] == 9


def test_connection_failures_are_transient(fake_run):
    fake_run(returncode=1, stderr="ovn-nbctl: unix:/run/ovn/ovnnb_db.sock: database connection failed")

    with pytest.raises(TransientDBError):
        ToolRunner("ovn-nbctl").run(["show"])


def test_constraint_failures_are_permanent(fake_run):
    fake_run(returncode=1, stderr="ovn-nbctl: no row \"sw0\" in table Logical_Switch")

    with pytest.raises(PermanentDBError) as info:
        ToolRunner("ovn-nbctl").run(["lsp-add", "sw0", "p0"])
    assert "lsp-add sw0 p0" in str(info.value)


def test_timeout_is_transient(fake_run):
    fake_run(raises=subprocess.TimeoutExpired(["ovn-nbctl"], 5))

    with pytest.raises(TransientDBError):
        ToolRunner("ovn-nbctl").run(["show"])


def test_missing_binary_is_permanent(fake_run):
    fake_run(raises=FileNotFoundError("ovn-nbctl"))

    with pytest.raises(PermanentDBError):
        ToolRunner("ovn-nbctl").run(["show"])


def test_rows_uses_find_with_conditions(fake_run):
    document = {
        "headings": ["name", "external_ids", "addresses"],
        "data": [
            ["sw0", ["map", [["k8s-owner", "node/n1"]]], ["set", []]],
            ["sw1", ["map", []], "0a:58:0a:00:00:02 10.0.0.2"],
        ],
    }
    run = fake_run(stdout=json.dumps(document))

    rows = ToolRunner("ovn-nbctl").rows(
        "Logical_Switch", ["name", "external_ids", "addresses"], ["name=sw0"]
    )

    assert run.calls[0][0][-3:] == ["find", "Logical_Switch", "name=sw0"]
    assert "--format=json" in run.calls[0][0]
    assert rows[0] == {"name": "sw0", "external_ids": {"k8s-owner": "node/n1"}, "addresses": []}
    assert rows[1]["addresses"] == "0a:58:0a:00:00:02 10.0.0.2"


def test_decode_rows_edge_cases():
    assert decode_rows("") == []
    with pytest.raises(PermanentDBError):
        decode_rows("{not json")

    rows = decode_rows(json.dumps({
        "headings": ["_uuid", "ports"],
        "data": [[["uuid", "abc"], ["set", [["uuid", "p1"], ["uuid", "p2"]]]]],
    }))
    assert rows == [{"_uuid": "abc", "ports": ["p1", "p2"]}]


def test_set_helpers():
    assert as_list(None) == []
    assert as_list("a") == ["a"]
    assert as_list(["a", "b"]) == ["a", "b"]
    assert as_optional([]) is None
    assert as_optional("x") == "x"


def test_encoding_is_sorted_and_quoted():
    assert encode_map({"b": 2, "a": "x y"}) == '{"a"="x y","b"="2"}'
    assert encode_set(["10.0.0.2:80", "10.0.0.3:80"]) == '["10.0.0.2:80","10.0.0.3:80"]'


def test_backoff_schedule():
    backoff = Backoff(base=0.5, cap=3.0, jitter=False)

    assert [backoff.delay(attempt) for attempt in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]
    jittered = Backoff(base=1.0, cap=10.0).delay(1)
    assert 1.0 <= jittered < 3.0


def test_sleep_is_cancelled_by_stop_event():
    event = threading.Event()
    sleep(event, 0.001)

    event.set()
    with pytest.raises(Cancelled):
        sleep(event, 10)
