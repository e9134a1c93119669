# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the argument parser and the two-phase config parse."""
from __future__ import annotations

import json

import pytest

from imgtailor.cli.parser import build_parser, parse_args_with_config
from imgtailor.core.context import DEFAULT_COMMAND_TIMEOUT_S
from imgtailor.core.exceptions import ConfigError

BASE = ["--image", "D:/src/install.wim", "--mount-dir", "C:/mnt/wim"]


@pytest.mark.unit
class TestParser:
    """Test the plain argparse layer."""

    def test_defaults(self):
        """Test default option values."""
        args = build_parser().parse_args(BASE)
        assert args.index == 1
        assert args.hives is None
        assert args.settings_files == []
        assert args.export_compress == "recovery"
        assert args.command_timeout == DEFAULT_COMMAND_TIMEOUT_S
        assert args.long_timeout is None
        assert args.cancel_key == "s"
        assert not args.no_commit

    def test_repeatable_options(self):
        """Test options that may be given more than once."""
        args = build_parser().parse_args(
            BASE
            + [
                "--hive", "zSOFTWARE=Windows/System32/config/SOFTWARE",
                "--hive", "zCOMPONENTS?=Windows/System32/config/COMPONENTS",
                "--remove-package", "Microsoft.Bing",
                "--remove-package", "Microsoft.Xbox",
                "--run", "tool {mount_dir}",
            ]
        )
        assert len(args.hives) == 2
        assert args.remove_packages == ["Microsoft.Bing", "Microsoft.Xbox"]
        assert args.commands == ["tool {mount_dir}"]

    def test_bad_compression_rejected(self):
        """Test that argparse rejects an unknown compression."""
        with pytest.raises(SystemExit) as ei:
            build_parser().parse_args(BASE + ["--export-compress", "zip"])
        assert ei.value.code == 2


@pytest.mark.unit
class TestTwoPhaseParse:
    """Test YAML defaults merged under CLI values."""

    def test_yaml_supplies_defaults_cli_wins(self, logger, tmp_path):
        """Test that YAML fills defaults and the CLI overrides them."""
        cfg = tmp_path / "run.yaml"
        cfg.write_text(
            "image: D:/src/install.wim\nmount_dir: C:/mnt/wim\nindex: 6\nremove_packages: [Microsoft.Bing]\n",
            encoding="utf-8",
        )
        args, conf, lg = parse_args_with_config(["--config", str(cfg), "--index", "2"], logger)
        assert lg is logger
        assert args.image == "D:/src/install.wim"
        assert args.index == 2
        assert args.remove_packages == ["Microsoft.Bing"]
        assert conf["index"] == 6

    def test_non_cli_keys_stay_in_conf(self, logger, tmp_path):
        """Test that YAML-only keys stay in the config dict."""
        cfg = tmp_path / "run.yaml"
        cfg.write_text("alternate_paths: {Policies: 'Software\\Policies'}\n", encoding="utf-8")
        args, conf, _ = parse_args_with_config(BASE + ["--config", str(cfg)], logger)
        assert conf["alternate_paths"] == {"Policies": "Software\\Policies"}
        assert not hasattr(args, "alternate_paths")

    def test_missing_image(self, logger):
        """Test that a missing image is a config error with code 2."""
        with pytest.raises(ConfigError) as ei:
            parse_args_with_config(["--mount-dir", "C:/mnt"], logger)
        assert ei.value.code == 2

    @pytest.mark.parametrize(
        "extra",
        [
            ["--index", "0"],
            ["--export-index", "0"],
            ["--cancel-key", "ab"],
            ["--command-timeout", "0"],
            ["--long-timeout", "-5"],
            ["--poll-interval", "0"],
        ],
    )
    def test_validation(self, logger, extra):
        """Test range checks on numeric and key options."""
        with pytest.raises(ConfigError):
            parse_args_with_config(BASE + extra, logger)

    def test_missing_config_file(self, logger, tmp_path):
        """Test a config path that does not exist."""
        with pytest.raises(ConfigError):
            parse_args_with_config(BASE + ["--config", str(tmp_path / "none.yaml")], logger)

    def test_dump_config(self, logger, tmp_path, capsys):
        """Test --dump-config prints the merged YAML and exits."""
        cfg = tmp_path / "run.yaml"
        cfg.write_text("index: 3\n", encoding="utf-8")
        with pytest.raises(SystemExit) as ei:
            parse_args_with_config(["--config", str(cfg), "--dump-config"], logger)
        assert ei.value.code == 0
        assert json.loads(capsys.readouterr().out) == {"index": 3}

    def test_dump_args(self, logger, capsys):
        """Test --dump-args prints the final arguments and exits."""
        with pytest.raises(SystemExit):
            parse_args_with_config(BASE + ["--dump-args"], logger)
        dumped = json.loads(capsys.readouterr().out)
        assert dumped["mount_dir"] == "C:/mnt/wim"
