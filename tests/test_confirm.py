from conftest import console_text
from xiops.confirm import random_char_confirm


def test_matching_characters_confirm(monkeypatch, console):
    monkeypatch.setattr("xiops.confirm.random.choices", lambda population, k: ["q", "r", "s"])
    monkeypatch.setattr("builtins.input", lambda *args: " qrs ")

    assert random_char_confirm("Downgrade the database?", console)
    assert "qrs" in console_text(console)


def test_anything_else_aborts(monkeypatch, console):
    monkeypatch.setattr("xiops.confirm.random.choices", lambda population, k: ["q", "r", "s"])
    monkeypatch.setattr("builtins.input", lambda *args: "yes")

    assert not random_char_confirm("Downgrade the database?", console)
    assert "Aborted." in console_text(console)
