import allure
from click.testing import CliRunner

from agent_loop_runner import __version__
from agent_loop_runner.main import agent_loop_runner

pytestmark = [
    allure.epic("Agent Loop Runner"),
    allure.feature("CLI"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(agent_loop_runner, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
