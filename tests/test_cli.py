from typer.testing import CliRunner

from cli.main import app
from scenarios import run_scenarios

runner = CliRunner()


def test_policy_list():
    result = runner.invoke(app, ["policy", "list"])
    assert result.exit_code == 0
    assert "STUDENTS" in result.output
    assert "ENROLLMENTS" in result.output


def test_policy_show_unknown_resource():
    result = runner.invoke(app, ["policy", "show", "PAYROLL"])
    assert result.exit_code == 1


def test_policy_show_lists_rules():
    result = runner.invoke(app, ["policy", "show", "STUDENTS"])
    assert result.exit_code == 0
    assert "TEACHER" in result.output
    assert "SIN" in result.output


def test_demo_scenarios_pass():
    assert run_scenarios("all")
    assert not run_scenarios("nonexistent")


def test_access_with_misspelled_operation_is_a_usage_error():
    result = runner.invoke(app, ["test", "access", "--user", "ADMIN_USER", "--resource", "STUDENTS",
                                 "--operation", "READS"])
    assert result.exit_code == 2
    assert not isinstance(result.exception, ValueError)
