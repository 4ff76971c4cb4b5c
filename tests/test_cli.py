"""Tests for the operator CLI argument parsing."""

from __future__ import annotations

import pytest

from escrow_settlement.cli import COMMANDS, build_parser


class TestParser:
    def test_reconcile_range(self) -> None:
        args = build_parser().parse_args(["reconcile", "--from-block", "10", "--to-block", "20"])
        assert (args.command, args.from_block, args.to_block) == ("reconcile", 10, 20)

    def test_reconcile_defaults(self) -> None:
        args = build_parser().parse_args(["reconcile"])
        assert args.from_block is None
        assert args.to_block is None

    def test_sync_requires_integer_task_id(self) -> None:
        assert build_parser().parse_args(["sync", "42"]).task_id == 42
        with pytest.raises(SystemExit):
            build_parser().parse_args(["sync", "abc"])

    def test_verify_deposit(self) -> None:
        args = build_parser().parse_args(
            ["verify-deposit", "task-1", "0x2222222222222222222222222222222222222222"]
        )
        assert args.external_id == "task-1"

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_every_subcommand_has_a_handler(self) -> None:
        parser = build_parser()
        subparsers = parser._subparsers._group_actions[0]
        assert set(subparsers.choices) == set(COMMANDS)
