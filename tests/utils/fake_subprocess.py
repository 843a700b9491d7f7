"""Test helper: fake subprocess runner utilities.

Provides:
- make_completed_process(cmd, returncode=0, stdout='', stderr='') -> CompletedProcess
- FakeSubprocess: callable object mapping command substrings to results and
  recording every command it is called with

Usage example in tests:

    from tests.utils.fake_subprocess import FakeSubprocess

    fake = FakeSubprocess()
    fake.when("tc -s class show").then_stdout("class hfsc 1:10 ...")
    backend = TcShaperBackend("eth0", runner=fake)

The FakeSubprocess supports simple substring matching of the joined cmd list.
"""
from __future__ import annotations

import subprocess
from typing import Callable, List, Tuple


def make_completed_process(cmd, returncode: int = 0, stdout: str = "", stderr: str = ""):
    return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)


class FakeSubprocess:
    """A small callable object to fake subprocess.run-like behavior.

    - Use when(...) to register expected command substrings and responses.
    - When called, it finds the first registered rule where the substring is in the joined command.
    - Every call is appended to ``calls`` as the joined command string.
    """

    def __init__(self):
        self._rules: List[Tuple[str, Callable[[], subprocess.CompletedProcess]]] = []
        self.calls: List[str] = []

    def when(self, cmd_substring: str):
        class _Then:
            def __init__(self, parent: FakeSubprocess, substr: str):
                self.parent = parent
                self.substr = substr

            def then_stdout(self, stdout: str, returncode: int = 0, stderr: str = ""):
                def factory():
                    return make_completed_process(self.substr, returncode=returncode, stdout=stdout, stderr=stderr)

                self.parent._rules.append((self.substr, factory))
                return self.parent

            def then_fail(self, returncode: int = 1, stderr: str = "RTNETLINK answers: File exists"):
                return self.then_stdout("", returncode=returncode, stderr=stderr)

            def then_raise(self, exc: BaseException):
                def factory():
                    raise exc

                self.parent._rules.append((self.substr, factory))
                return self.parent

        return _Then(self, cmd_substring)

    def __call__(self, cmd, **kwargs):
        joined = " ".join(cmd) if isinstance(cmd, (list, tuple)) else str(cmd)
        self.calls.append(joined)
        for substr, factory in self._rules:
            if substr in joined:
                return factory()
        # default: return a successful empty result
        return make_completed_process(cmd, 0, stdout="", stderr="")

    def matching(self, cmd_substring: str) -> List[str]:
        return [c for c in self.calls if cmd_substring in c]
