"""Tests for tether.config: TOML config file loading, merging, and CLI integration."""

import argparse
import tomllib
import types

import pytest

from tether.config import (
    _UNSET,
    ConfigError,
    apply_config_to_args,
    config_to_session_kwargs,
    generate_config,
    global_config_dir,
    load_config,
)
from tether.types import PermissionAction


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_global_config(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _global(tmp_path, monkeypatch, content):
    global_dir = tmp_path / "global_cfg"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
    _write_toml(global_dir / "tether" / "config.toml", content)


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "provider": _UNSET,
        "model": _UNSET,
        "api_key": _UNSET,
        "base_url": _UNSET,
        "max_output_tokens": _UNSET,
        "temperature": _UNSET,
        "top_p": _UNSET,
        "seed": _UNSET,
        "max_steps": _UNSET,
        "system_prompt": _UNSET,
        "no_system_prompt": _UNSET,
        "yolo": _UNSET,
        "persist_permissions": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path):
        assert load_config(tmp_path) == {}

    def test_global_only(self, tmp_path, monkeypatch):
        _global(tmp_path, monkeypatch, 'provider = "openrouter"\n')
        result = load_config(tmp_path / "project")
        assert result["provider"] == "openrouter"

    def test_project_only(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", "max_steps = 25\n")
        assert load_config(tmp_path) == {"max_steps": 25}

    def test_project_overrides_global(self, tmp_path, monkeypatch):
        _global(tmp_path, monkeypatch, 'provider = "openrouter"\nmax_steps = 5\n')
        _write_toml(tmp_path / "tether.toml", "max_steps = 7\n")
        result = load_config(tmp_path)
        assert result == {"provider": "openrouter", "max_steps": 7}

    def test_unknown_keys_warn(self, tmp_path, capsys):
        _write_toml(tmp_path / "tether.toml", "bogus = 1\nmax_steps = 3\n")
        result = load_config(tmp_path)
        assert "bogus" not in result
        assert "unknown config key 'bogus'" in capsys.readouterr().err

    def test_wrong_type_raises(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", 'max_steps = "ten"\n')
        with pytest.raises(ConfigError, match="expected int"):
            load_config(tmp_path)

    def test_invalid_toml_raises(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", "bad syntax {{{")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_unknown_provider_raises(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", 'provider = "acme"\n')
        with pytest.raises(ConfigError, match="must be one of"):
            load_config(tmp_path)

    def test_max_steps_must_be_positive(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", "max_steps = 0\n")
        with pytest.raises(ConfigError, match="at least 1"):
            load_config(tmp_path)

    def test_generate_config_is_valid_toml(self):
        text = generate_config()
        assert tomllib.loads(text) == {}
        uncommented = "\n".join(
            line[2:] if line.startswith("# ") and "=" in line and "[" not in line[:3] else ""
            for line in text.splitlines()
        )
        parsed = tomllib.loads(uncommented)
        assert parsed["max_steps"] == 10

    def test_generate_config_project_flag(self):
        assert "tether.toml" in generate_config(project=True)
        assert "config.toml" in generate_config(project=False)


class TestTypeValidation:
    def test_toml_int_for_float_field(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", "temperature = 1\n")
        assert load_config(tmp_path)["temperature"] == 1

    def test_bool_for_int_field_raises(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", "max_steps = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_bool_for_float_field_raises(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", "top_p = false\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_string_for_bool_field_raises(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", 'yolo = "yes"\n')
        with pytest.raises(ConfigError, match="expected bool"):
            load_config(tmp_path)

    def test_permission_must_be_table(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", 'permission = "allow"\n')
        with pytest.raises(ConfigError, match="expected table"):
            load_config(tmp_path)


class TestMutualExclusion:
    def test_both_system_prompt_and_no_system_prompt(self, tmp_path):
        _write_toml(
            tmp_path / "tether.toml",
            'system_prompt = "hi"\nno_system_prompt = true\n',
        )
        with pytest.raises(ConfigError, match="mutually exclusive"):
            load_config(tmp_path)

    def test_system_prompt_alone(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", 'system_prompt = "hi"\n')
        assert load_config(tmp_path)["system_prompt"] == "hi"

    def test_cross_file_conflict(self, tmp_path, monkeypatch):
        _global(tmp_path, monkeypatch, 'system_prompt = "hi"\n')
        _write_toml(tmp_path / "tether.toml", "no_system_prompt = true\n")
        with pytest.raises(ConfigError, match="across global and project"):
            load_config(tmp_path)


# ===========================================================================
# Permission tables
# ===========================================================================


class TestPermissionTable:
    def test_actions_are_normalized(self, tmp_path):
        _write_toml(
            tmp_path / "tether.toml",
            '[permission]\nbash = "DENY"\nwrite = "allow"\n',
        )
        perms = load_config(tmp_path)["permission"]
        assert perms == {"bash": PermissionAction.DENY, "write": PermissionAction.ALLOW}

    def test_pattern_table_accepted(self, tmp_path):
        _write_toml(
            tmp_path / "tether.toml",
            '[permission.bash]\n"*" = "ask"\n"git *" = "allow"\n',
        )
        assert load_config(tmp_path)["permission"]["bash"] is PermissionAction.ASK

    def test_bad_action_names_the_key(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", '[permission]\nbash = "sometimes"\n')
        with pytest.raises(ConfigError, match="permission.bash"):
            load_config(tmp_path)

    def test_tables_merge_per_tool(self, tmp_path, monkeypatch):
        _global(tmp_path, monkeypatch, '[permission]\nbash = "deny"\nwrite = "allow"\n')
        _write_toml(tmp_path / "tether.toml", '[permission]\nbash = "allow"\n')
        perms = load_config(tmp_path)["permission"]
        assert perms["bash"] is PermissionAction.ALLOW
        assert perms["write"] is PermissionAction.ALLOW


# ===========================================================================
# apply_config_to_args
# ===========================================================================


class TestApplyConfigToArgs:
    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"model": "m", "max_steps": 4})
        assert args.model == "m"
        assert args.max_steps == 4

    def test_cli_beats_config(self):
        args = _make_args(max_steps=20)
        apply_config_to_args(args, {"max_steps": 4})
        assert args.max_steps == 20

    def test_sentinel_resolves_to_default(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.provider == "lmstudio"
        assert args.max_steps == 10
        assert args.max_output_tokens == 32768
        assert args.yolo is False
        assert args.permission is None
        assert args.temperature is None

    def test_store_true_absent_plus_config_true(self):
        args = _make_args()
        apply_config_to_args(args, {"yolo": True})
        assert args.yolo is True

    def test_store_true_flag_present_beats_config(self):
        args = _make_args(yolo=True)
        apply_config_to_args(args, {"yolo": False})
        assert args.yolo is True

    def test_color_config_true(self):
        args = _make_args()
        apply_config_to_args(args, {"color": True})
        assert args.color is True
        assert args.no_color is False

    def test_color_config_false(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_no_color_cli_overrides_config(self):
        args = _make_args(no_color=True)
        apply_config_to_args(args, {"color": True})
        assert args.no_color is True
        assert args.color is False

    def test_permission_from_config(self):
        args = _make_args()
        apply_config_to_args(args, {"permission": {"bash": PermissionAction.DENY}})
        assert args.permission == {"bash": PermissionAction.DENY}


class TestConfigToSessionKwargs:
    def test_identity_keys(self):
        kwargs = config_to_session_kwargs({"provider": "openrouter", "max_steps": 50})
        assert kwargs == {"provider": "openrouter", "max_steps": 50}

    def test_quiet_inverts_to_verbose(self):
        assert config_to_session_kwargs({"quiet": True}) == {"verbose": False}

    def test_color_dropped(self):
        assert config_to_session_kwargs({"color": True}) == {}

    def test_accepted_by_session(self):
        from tether.session import Session

        config = {
            "provider": "openrouter",
            "model": "test",
            "max_steps": 3,
            "yolo": True,
            "quiet": False,
            "permission": {"bash": PermissionAction.DENY},
        }
        session = Session(**config_to_session_kwargs(config))
        assert session.provider == "openrouter"
        assert session.max_steps == 3
        assert session.verbose is True
        assert session.permission == {"bash": PermissionAction.DENY}


# ===========================================================================
# Misc
# ===========================================================================


class TestApiKeyWarning:
    def test_api_key_in_git_repo_warns(self, tmp_path, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "tether.toml", 'api_key = "sk-secret"\n')
        load_config(tmp_path)
        assert "git-tracked" in capsys.readouterr().err

    def test_api_key_without_git_no_warning(self, tmp_path, capsys):
        project = tmp_path / "proj"
        _write_toml(project / "tether.toml", 'api_key = "sk-secret"\n')
        load_config(project)
        # Only meaningful when no ancestor of tmp_path is a git checkout.
        if not any((p / ".git").exists() for p in project.resolve().parents):
            assert "git-tracked" not in capsys.readouterr().err


class TestGlobalConfigDir:
    def test_respects_xdg(self, monkeypatch, tmp_path):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert global_config_dir() == tmp_path / "tether"

    def test_default_home(self, monkeypatch, tmp_path):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert global_config_dir() == tmp_path / ".config" / "tether"


# ===========================================================================
# Integration: full CLI → config → resolution
# ===========================================================================


class TestCLIIntegration:
    def test_parse_load_apply(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", "max_steps = 42\nyolo = true\n")

        from tether.agent import build_parser

        args = build_parser().parse_args(["--base-dir", str(tmp_path), "question"])
        apply_config_to_args(args, load_config(tmp_path))

        assert args.max_steps == 42
        assert args.yolo is True
        assert args.provider == "lmstudio"

    def test_cli_flag_overrides_config(self, tmp_path):
        _write_toml(tmp_path / "tether.toml", "max_steps = 42\n")

        from tether.agent import build_parser

        args = build_parser().parse_args(["--max-steps", "3", "question"])
        apply_config_to_args(args, load_config(tmp_path))

        assert args.max_steps == 3

    def test_config_error_exits_cleanly(self, tmp_path):
        """Invalid config produces an error message and exit 1, not a traceback."""
        _write_toml(tmp_path / "tether.toml", 'max_steps = "oops"\n')

        from unittest.mock import MagicMock, patch

        from tether import agent

        mock_parser = MagicMock()
        mock_parser.parse_args.return_value = types.SimpleNamespace(
            version=False,
            base_dir=str(tmp_path),
            init_config=False,
            project=False,
        )

        with patch.object(agent, "build_parser", return_value=mock_parser):
            with pytest.raises(SystemExit) as exc_info:
                agent.main()
        assert exc_info.value.code == 1
