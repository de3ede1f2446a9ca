"""
Tests for the CLI interface.
"""
import os
import tempfile
from decimal import Decimal

import pytest
import yaml
from typer.testing import CliRunner

from ai_budget_governor.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_DENIED, EXIT_CODE_FAIL
from ai_budget_governor.storage.models import SubscriptionTier
from ai_budget_governor.storage.repository import get_repository

runner = CliRunner()


@pytest.fixture
def db_path():
    """Create a temporary database path."""
    temp_dir = tempfile.mkdtemp()
    yield os.path.join(temp_dir, "cli.db")
    import shutil
    shutil.rmtree(temp_dir, ignore_errors=True)


def invoke(db_path, *args):
    return runner.invoke(app, ["--db", db_path, *args])


class TestCLI:
    """Test CLI commands."""

    def test_init_creates_database(self, db_path):
        """Test init creates the schema."""
        result = invoke(db_path, "init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(db_path)

    def test_register_and_status(self, db_path):
        """Test a registered user shows a green zero-spend profile."""
        invoke(db_path, "register", "alice", "--tier", "pro_monthly")

        result = invoke(db_path, "status", "alice")

        assert result.exit_code == EXIT_CODE_PASS
        assert "alice" in result.output
        assert "pro_monthly" in result.output
        assert "green" in result.output
        assert "$3.000000" in result.output

    def test_register_invalid_tier(self, db_path):
        """Test an unknown tier is a usage error."""
        result = invoke(db_path, "register", "alice", "--tier", "platinum")
        assert result.exit_code != EXIT_CODE_PASS

    def test_status_missing_user(self, db_path):
        """Test status of an unknown user fails."""
        result = invoke(db_path, "status", "ghost")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "No profile found" in result.output

    def test_route_admitted(self, db_path):
        """Test an admitted text route exits zero and names the model."""
        invoke(db_path, "register", "alice", "--tier", "pro_monthly")

        result = invoke(db_path, "route", "alice", "--class", "text")

        assert result.exit_code == EXIT_CODE_PASS
        assert "ADMIT" in result.output
        assert "gpt-4o" in result.output

    def test_route_denied_for_missing_profile(self, db_path):
        """Test a missing profile is denied with a non-zero exit."""
        result = invoke(db_path, "route", "ghost", "--class", "image")

        assert result.exit_code == EXIT_CODE_DENIED
        assert "PROFILE_NOT_FOUND" in result.output

    def test_route_red_image_restricted(self, db_path):
        """Test red images are reported as tier restricted."""
        repo = get_repository(db_path)
        repo.create_profile("alice", SubscriptionTier.PRO_MONTHLY)
        repo.update_profile("alice", cost_used=Decimal("2.50"))

        result = invoke(db_path, "route", "alice", "--class", "image")

        assert result.exit_code == EXIT_CODE_DENIED
        assert "TIER_RESTRICTED" in result.output

    def test_audit_charges_user(self, db_path):
        """Test audit records the text charge."""
        invoke(db_path, "register", "alice")

        result = invoke(db_path, "audit", "alice", "--tokens-in", "1000", "--tokens-out", "1000")

        assert result.exit_code == EXIT_CODE_PASS
        assert "$0.000400" in result.output
        assert get_repository(db_path).get_profile("alice").cost_used == Decimal("0.0004")

    def test_audit_missing_user_fails(self, db_path):
        """Test auditing an unknown user fails loudly."""
        result = invoke(db_path, "audit", "ghost", "--class", "image")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "No cost profile" in result.output

    def test_upgrade_changes_tier(self, db_path):
        """Test upgrade moves the user to a new plan."""
        invoke(db_path, "register", "alice")

        result = invoke(db_path, "upgrade", "alice", "pro_yearly")

        assert result.exit_code == EXIT_CODE_PASS
        assert get_repository(db_path).get_profile("alice").subscription_tier == SubscriptionTier.PRO_YEARLY

    def test_reset_cycle_zeroes_spend(self, db_path):
        """Test reset-cycle clears the accumulator."""
        invoke(db_path, "register", "alice")
        invoke(db_path, "audit", "alice", "--class", "image")

        result = invoke(db_path, "reset-cycle", "alice")

        assert result.exit_code == EXIT_CODE_PASS
        assert get_repository(db_path).get_profile("alice").cost_used == 0

    def test_report_lists_profiles(self, db_path):
        """Test the report table includes each user and their health."""
        invoke(db_path, "register", "alice", "--tier", "pro_monthly")
        invoke(db_path, "register", "bob")
        get_repository(db_path).update_profile("bob", cost_used=Decimal("0.02"))

        result = invoke(db_path, "report")

        assert result.exit_code == EXIT_CODE_PASS
        assert "alice" in result.output
        assert "bob" in result.output
        assert "black" in result.output

    def test_report_empty(self, db_path):
        """Test the report explains how to get started when empty."""
        result = invoke(db_path, "report")

        assert result.exit_code == EXIT_CODE_PASS
        assert "No cost profiles found" in result.output

    def test_custom_config(self, db_path):
        """Test --config switches the routing policy."""
        config_path = os.path.join(os.path.dirname(db_path), "policy.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump({
                "plans": {"free": 1.0, "pro_monthly": 5.0, "pro_yearly": 50.0},
                "costs": {"text_input_per_1k": 0.001, "text_output_per_1k": 0.002, "image": 0.01},
                "routing": {
                    "green": {"text": "custom-large", "image": "img-hd", "image_resolution": "1024x1024"},
                    "yellow": {"text": "custom-large", "image": "img-sd", "image_resolution": "256x256"},
                    "red": {"text": "custom-small"},
                },
            }, f)
        invoke(db_path, "register", "alice")

        result = runner.invoke(app, ["--db", db_path, "--config", config_path, "route", "alice"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "custom-large" in result.output
