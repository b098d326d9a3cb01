import json
from unittest.mock import patch

from bioauth.observability.logging import log
from bioauth.settings import settings


def _last_line(capsys):
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def test_secrets_are_redacted(capsys):
    with patch.object(settings, "ENABLE_LOG_REDACTION", True):
        log(event="provider_operation_created", operationId="op-1", oneTimeSecret="abc", data={"secret": "xyz", "id": 7})
    line = _last_line(capsys)
    assert line["event"] == "provider_operation_created"
    assert line["operationId"] == "op-1"
    assert line["oneTimeSecret"] == "[REDACTED:3chars]"
    assert line["data"] == {"secret": "[REDACTED:3chars]", "id": 7}
    assert isinstance(line["ts"], int)


def test_redaction_can_be_disabled(capsys):
    with patch.object(settings, "ENABLE_LOG_REDACTION", False):
        log(event="credential_issued", accessToken="tok")
    assert _last_line(capsys)["accessToken"] == "tok"


def test_non_json_values_are_stringified(capsys):
    log(event="poll_query_failed", error=ValueError("boom"))
    assert _last_line(capsys)["error"] == "boom"
