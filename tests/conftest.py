import textwrap

import pytest

from interpreter import Interpreter


@pytest.fixture
def make_interpreter():
    def _make(source=None, *, inputs=(), filename="<string>", **kwargs):
        output = []
        pending = list(inputs)

        def _input():
            if not pending:
                raise EOFError
            return pending.pop(0)

        if source is not None:
            source = textwrap.dedent(source)
        interpreter = Interpreter(
            filename=filename,
            source=source,
            input_provider=_input,
            output_sink=output.append,
            **kwargs,
        )
        return interpreter, output

    return _make


@pytest.fixture
def run_program(make_interpreter):
    def _run(source=None, **kwargs):
        interpreter, output = make_interpreter(source, **kwargs)
        interpreter.run()
        return output

    return _run
