import importlib.util
import json
from pathlib import Path

import pytest

from trustcore.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "mint_service_token.py"


@pytest.fixture
def script():
    spec = importlib.util.spec_from_file_location("mint_service_token", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_bootstrap_creates_admin_and_token(script):
    runtime = get_runtime()
    result = script.bootstrap_organization(runtime, "Acme", "root@acme.test", "long-password-1")

    account = runtime.store.get_account(result["account_id"])
    assert account.role.value == "admin"
    assert account.organization_id == result["organization_id"]
    claims = runtime.service_tokens.verify(result["token"])
    assert claims.subject == account.id
    assert claims.second_factor_verified is False


def test_bootstrap_rejects_short_password(script):
    with pytest.raises(ValueError):
        script.bootstrap_organization(get_runtime(), "Acme", "root@acme.test", "short")


def test_mint_and_inspect(script):
    runtime = get_runtime()
    script.bootstrap_organization(runtime, "Acme", "root@acme.test", "long-password-1")
    token = script.mint_for_email(runtime, "ROOT@acme.test", second_factor_verified=True)

    info = script.inspect_token(runtime, token)
    assert info["email"] == "root@acme.test"
    assert info["second_factor_verified"] is True


def test_main_reports_errors(script, capsys):
    assert script.main(["mint", "--email", "nobody@acme.test"]) == 1
    assert "no active account" in capsys.readouterr().out


def test_main_bootstrap_prints_json(script, capsys):
    code = script.main(
        ["bootstrap", "--org", "Acme", "--email", "root@acme.test", "--password", "long-password-1"]
    )
    assert code == 0
    output = capsys.readouterr().out
    assert "organization_id" in json.loads(output)
