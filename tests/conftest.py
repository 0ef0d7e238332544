import pytest

from notesetup.models import CommandResult
from notesetup.services.command_runner import CommandRunner
from notesetup.services.stage_tracker import StageTracker


class FakeRunner(CommandRunner):
    """CommandRunner that answers from a handler instead of spawning processes."""

    def __init__(self, handler, tracker=None):
        super().__init__(tracker or StageTracker())
        self.handler = handler
        self.calls = []

    async def run(self, program, args=(), **kwargs):
        call = {"cmd": [program, *args], **kwargs}
        self.calls.append(call)
        outcome = self.handler(call)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, int):
            outcome = CommandResult(exit_code=outcome)
        elif isinstance(outcome, tuple):
            exit_code, stdout = outcome
            outcome = CommandResult(exit_code=exit_code, stdout_lines=tuple(stdout.splitlines()))
        if kwargs.get("stream"):
            for line in outcome.stdout_lines:
                self.tracker.log(kwargs.get("topic", "install-log"), line, "stdout")
        return outcome

    def commands(self):
        return [" ".join(call["cmd"]) for call in self.calls]


@pytest.fixture
def fake_runner():
    def factory(handler, tracker=None):
        return FakeRunner(handler, tracker=tracker)

    return factory
