from __future__ import annotations

import logging

import pytest

from whatsroute import app, settings

OPS = "120363000000000001@g.us"


@pytest.fixture
def seeded(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DB_PATH", str(tmp_path / "whatsroute.db"))
    monkeypatch.setattr(
        settings,
        "CATEGORIES_CONFIG",
        [
            {
                "name": "Equipment",
                "department": "EQUIPMENT_MAINTENANCE",
                "keywords": ["treadmill", "broken"],
                "min_confidence_percent": 30,
                "severity_weight": 0.7,
            }
        ],
    )
    monkeypatch.setattr(settings, "GROUPS_CONFIG", [{"id": "120363000000000001", "name": "Ops"}])
    monkeypatch.setattr(settings, "RULES_CONFIG", [{"category": "Equipment", "group": OPS, "severity": ["high"]}])
    admin = app._open_admin()
    app._seed(admin)
    return admin


def test_seed_is_idempotent(seeded) -> None:
    app._seed(seeded)

    assert [c.name for c in seeded.registry.list_categories()] == ["Equipment"]
    assert len(seeded.rulebook.snapshot()) == 1
    assert seeded.registry.list_categories()[0].min_confidence == 0.3


def test_categories_list_command(seeded, capsys) -> None:
    app.main(["categories", "list"])
    out = capsys.readouterr().out
    assert "Equipment | EQUIPMENT_MAINTENANCE | approved | static | threshold 30%" in out


def test_rules_add_and_list_commands(seeded, capsys) -> None:
    category_id = seeded.registry.list_categories()[0].id
    app.main(["rules", "add", "--category", str(category_id), "--group", "120363000000000001", "--severity", "medium"])
    app.main(["rules", "list"])

    out = capsys.readouterr().out
    assert "created" in out
    assert f"category {category_id} -> {OPS} | medium | priority 100 | active" in out


def test_bands_command_updates_edges(seeded, capsys) -> None:
    app.main(["bands", "--high", "70"])
    out = capsys.readouterr().out
    assert "HIGH >= 70%" in out
    assert "MEDIUM >= 30%" in out


def test_invalid_admin_action_exits_with_error(seeded, capsys) -> None:
    category_id = seeded.registry.list_categories()[0].id

    with pytest.raises(SystemExit) as excinfo:
        app.main(["categories", "approve", str(category_id), "--by", "Ravi"])

    assert excinfo.value.code == 1
    assert "error:" in capsys.readouterr().err


def test_invalid_bands_exit_with_error(seeded, capsys) -> None:
    with pytest.raises(SystemExit):
        app.main(["bands", "--medium", "90"])
    assert "ascending" in capsys.readouterr().err


def test_redacting_formatter_hides_secrets() -> None:
    formatter = app._RedactingFormatter(["s3cret-token"], fmt="%(message)s")
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "token=%s", ("s3cret-token",), None)
    assert formatter.format(record) == "token=***"
