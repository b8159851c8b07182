"""Tests for the command-line entry point."""

import argparse
import json

import pytest

from inkmirror.__main__ import _startup_payload, main
from inkmirror.errors import ContractViolation


def args(**kwargs):
    defaults = dict(config=None, mock=False, frames_dir=None)
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


def test_no_config_waits_for_host():
    assert _startup_payload(args()) is None


def test_mock_alone_uses_defaults():
    assert _startup_payload(args(mock=True, frames_dir='/tmp/f')) == {'mock': True, 'frames_dir': '/tmp/f'}


def test_config_file(tmp_path):
    path = tmp_path / 'inkmirror.json'
    path.write_text(json.dumps({'prefer_few_level': True}))
    assert _startup_payload(args(config=str(path))) == {'prefer_few_level': True}


def test_mock_flag_overrides_file(tmp_path):
    path = tmp_path / 'inkmirror.json'
    path.write_text(json.dumps({'mock': False}))
    assert _startup_payload(args(config=str(path), mock=True))['mock'] is True


def test_invalid_config_file(tmp_path):
    path = tmp_path / 'inkmirror.json'
    path.write_text(json.dumps({'debounce': 1}))
    with pytest.raises(ContractViolation):
        _startup_payload(args(config=str(path)))


def test_no_web_requires_config(monkeypatch):
    monkeypatch.delenv('INKMIRROR_CONFIG', raising=False)
    with pytest.raises(SystemExit) as exc:
        main(['--no-web'])
    assert exc.value.code == 2
