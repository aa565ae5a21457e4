import pytest

from agentmail.errors import MalformedRecordError
from agentmail.jsonl import append_line, decode_line, read_records, values, write_records
from agentmail.models import Message


def test_missing_file_reads_as_empty(tmp_path):
    assert read_records(tmp_path / "absent.jsonl", Message.from_dict) == []


def test_malformed_lines_are_kept_verbatim_on_rewrite(tmp_path):
    path = tmp_path / "bob.jsonl"
    path.write_text(
        '{"id":"a1","from":"alice","to":"bob","message":"one","read_flag":false}\n'
        "not json at all\n"
        '{"id":"a2","from":"alice","to":"bob","message":"two","read_flag":false}\n',
        encoding="utf-8",
    )
    records = read_records(path, Message.from_dict)
    assert len(records) == 3
    assert records[1].malformed
    assert [message.id for message in values(records)] == ["a1", "a2"]

    records[0].value.read = True
    write_records(path, records, Message.to_dict)

    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[1] == "not json at all"
    assert '"read_flag":true' in lines[0]
    assert not list(tmp_path.glob(".bob.jsonl.*.tmp"))


def test_append_never_joins_a_truncated_line(tmp_path):
    path = tmp_path / "bob.jsonl"
    path.write_text('{"id":"a1","from":"alice"', encoding="utf-8")
    append_line(path, {"id": "a2", "from": "alice", "to": "bob", "message": "m", "read_flag": False})
    records = read_records(path, Message.from_dict)
    assert len(records) == 2
    assert records[0].malformed
    assert records[1].value.id == "a2"


def test_decode_line_reports_position(tmp_path):
    with pytest.raises(MalformedRecordError) as excinfo:
        decode_line(tmp_path / "x.jsonl", 7, "{", Message.from_dict)
    assert excinfo.value.line_number == 7
    assert excinfo.value.recoverable
