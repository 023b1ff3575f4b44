import importlib.util
import os

from pony.orm import db_session

from models import User

SCRIPT = os.path.join(os.path.dirname(__file__), '..', 'scripts', 'create_tables.py')


def load_script():
    spec = importlib.util.spec_from_file_location('create_tables', SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_creates_tables():
    script = load_script()
    assert script.main([]) == 0
    with db_session:
        assert User.select().count() >= 0


def test_drop_requires_confirmation(monkeypatch):
    script = load_script()
    monkeypatch.setattr('builtins.input', lambda prompt: 'no')
    assert script.main(['--drop']) == 1
