from fanout.errors import ValidationFailure
from fanout.commands import fund as fund_command


def test_fund_subcommand_dispatches(monkeypatch):
    calls = []

    async def fake_fund(distributor_key, idempotency_key=None):
        calls.append((distributor_key, idempotency_key))
        return 1

    monkeypatch.setattr(fund_command, "fund", fake_fund)

    assert fund_command.main(["fund", "dist-key", "--idempotency-key", "nightly-1"]) == 1
    assert calls == [("dist-key", "nightly-1")]


def test_provision_subcommand_defaults(monkeypatch):
    calls = []

    async def fake_provision(distributor_key, intermediates, terminals):
        calls.append((distributor_key, intermediates, terminals))
        return 0

    monkeypatch.setattr(fund_command, "provision", fake_provision)

    assert fund_command.main(["provision", "--terminals", "3"]) == 0
    assert calls == [(None, 2, 3)]


def test_ledger_errors_exit_non_zero(monkeypatch, capsys):
    async def fake_provision(distributor_key, intermediates, terminals):
        raise ValidationFailure(f"parent {distributor_key} not found for intermediate wallet")

    monkeypatch.setattr(fund_command, "provision", fake_provision)

    assert fund_command.main(["provision", "--distributor", "unknown"]) == 2
    assert "parent unknown not found" in capsys.readouterr().err
