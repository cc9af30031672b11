import pytest

from interpreter import (
    CallDepthExceeded,
    CapacityExceeded,
    IO_LOG_LIMIT,
    InvalidInput,
    OutOfBounds,
    PrivilegeViolation,
    TracebackFormatter,
    UndefinedFunction,
    UnknownCommand,
)
from lexer import PRIMITIVES


def test_dispatch_covers_every_primitive(make_interpreter):
    interpreter, _ = make_interpreter("")
    assert set(interpreter.dispatch) == PRIMITIVES


def test_increment_and_output(run_program):
    assert run_program("kas kas kas kasistan") == [3]


def test_function_call_then_output(run_program):
    source = """
    nejatjobs inc3 {
    kas kas kas
    }
    inc3 kasistan
    """
    assert run_program(source) == [3]


def test_unknown_command_stops_the_run(make_interpreter):
    interpreter, output = make_interpreter("kas kasistan\nfoo\nkas kasistan\n")
    with pytest.raises(UnknownCommand) as excinfo:
        interpreter.run()
    assert output == [1]
    assert excinfo.value.location.line == 2
    assert excinfo.value.step_index is not None


def test_decrement_below_zero_wraps(run_program):
    assert run_program("tek kasistan") == [255]


def test_move_and_output(run_program):
    assert run_program("kas ali kas kas kasistan sahin kasistan") == [2, 1]


def test_skip_if_zero_abandons_rest_of_line(run_program):
    source = """
    tekkas kas kasistan
    kas kasistan
    """
    assert run_program(source) == [1]


def test_skip_if_nonzero_abandons_rest_of_line(run_program):
    source = """
    kas alisahin kasistan
    kasistan
    """
    assert run_program(source) == [1]


def test_skip_inside_function_does_not_affect_caller(run_program):
    source = """
    nejatjobs f {
    tekkas kas
    }
    f kas kasistan
    """
    assert run_program(source) == [1]


def test_skip_only_affects_current_body_line(run_program):
    source = """
    nejatjobs f {
    tekkas kasistan
    kas kasistan
    }
    f
    """
    assert run_program(source) == [1]


def test_self_recursion_terminates(make_interpreter):
    source = """
    nejatjobs geri {
    tekkas kasistan tek geri
    }
    kas kas kas geri
    """
    interpreter, output = make_interpreter(source)
    interpreter.run()
    assert output == [3, 2, 1]
    assert interpreter.tape.read() == 0


def test_mutual_recursion(run_program):
    source = """
    nejatjobs ping {
    tekkas kasistan tek pong
    }
    nejatjobs pong {
    tekkas kasistan tek ping
    }
    kas kas kas kas ping
    """
    assert run_program(source) == [4, 3, 2, 1]


def test_unbounded_recursion_reports_call_depth(make_interpreter):
    source = """
    nejatjobs f {
    f
    }
    f
    """
    interpreter, _ = make_interpreter(source)
    with pytest.raises(CallDepthExceeded) as excinfo:
        interpreter.run()
    text = TracebackFormatter(interpreter).format_text(excinfo.value, verbose=True)
    assert "Previous frame repeated" in text
    assert text.splitlines()[-1].startswith("<string>:")


def test_invoke_undefined_function(make_interpreter):
    interpreter, _ = make_interpreter("")
    with pytest.raises(UndefinedFunction):
        interpreter.invoke("nope")


def test_primitive_shadows_function_of_same_name(make_interpreter):
    source = """
    nejatjobs kas {
    tek tek
    }
    kas kasistan
    """
    interpreter, output = make_interpreter(source)
    interpreter.run()
    assert output == [1]
    assert "kas" in interpreter.functions


def test_function_body_is_stored_not_executed(make_interpreter):
    source = """
    nejatjobs f {
    kas kasistan
    kas
    }
    """
    interpreter, output = make_interpreter(source)
    interpreter.run()
    assert output == []
    assert [line.text for line in interpreter.functions.lookup("f").body] == ["kas kasistan", "kas"]


def test_unprivileged_redefinition_replaces_body(run_program):
    source = """
    nejatjobs f {
    kas kas
    }
    nejatjobs f {
    kas
    }
    f kasistan
    """
    assert run_program(source) == [1]


def test_privileged_function_cannot_be_redefined_without_sudo(make_interpreter):
    source = """
    sudo
    nejatjobs f {
    kas
    }
    nejatjobs f {
    tek
    }
    """
    interpreter, _ = make_interpreter(source)
    with pytest.raises(PrivilegeViolation):
        interpreter.run()
    function = interpreter.functions.lookup("f")
    assert function.is_privileged
    assert [line.text for line in function.body] == ["kas"]


def test_privileged_function_redefined_with_sudo(run_program):
    source = """
    sudo
    nejatjobs f {
    kas
    }
    sudo
    nejatjobs f {
    kas kas
    }
    f kasistan
    """
    assert run_program(source) == [2]


def test_any_closing_brace_disarms_sudo(make_interpreter):
    source = """
    sudo
    }
    nejatjobs f {
    kas
    }
    """
    interpreter, _ = make_interpreter(source)
    interpreter.run()
    assert not interpreter.functions.lookup("f").is_privileged


def test_sudo_stays_armed_across_statements(make_interpreter):
    source = """
    sudo
    kas
    nejatjobs f {
    """
    interpreter, _ = make_interpreter(source)
    interpreter.run()
    assert interpreter.sudo_armed
    assert interpreter.functions.lookup("f").is_privileged


def test_function_left_open_at_end_of_source(make_interpreter):
    interpreter, output = make_interpreter("nejatjobs f {\nkas kasistan\n")
    interpreter.run()
    assert output == []
    assert [line.text for line in interpreter.functions.lookup("f").body] == ["kas kasistan"]


def test_comments_and_blank_lines_are_skipped(run_program):
    source = """
    ; a comment
    kas

       ; indented comment
    kasistan
    """
    assert run_program(source) == [1]


@pytest.mark.parametrize(
    "inputs, expected",
    [
        (["7"], [7]),
        (["-1"], [255]),
        (["300"], [44]),
        (["", "  12  "], [12]),
        (["+5"], [5]),
    ],
)
def test_read_integer(run_program, inputs, expected):
    assert run_program("alisah kasistan", inputs=inputs) == expected


def test_read_integers_from_one_input_line(make_interpreter):
    interpreter, output = make_interpreter("alisah alisah kasistan", inputs=["3 4"])
    interpreter.run()
    assert output == [7]
    assert list(interpreter.io_log) == [
        {"event": "INPUT", "text": "3"},
        {"event": "INPUT", "text": "4"},
        {"event": "OUTPUT", "byte": 7},
    ]


def test_read_integer_at_end_of_input(make_interpreter):
    interpreter, _ = make_interpreter("alisah")
    with pytest.raises(InvalidInput) as excinfo:
        interpreter.run()
    assert excinfo.value.location.column == 1


@pytest.mark.parametrize("word", ["abc", "1_000", "\u0663", "4.0", "+"])
def test_read_integer_rejects_non_decimal_words(make_interpreter, word):
    interpreter, _ = make_interpreter("alisah", inputs=[word])
    with pytest.raises(InvalidInput):
        interpreter.run()


def test_move_left_of_origin(make_interpreter):
    interpreter, _ = make_interpreter("kas sahin")
    with pytest.raises(OutOfBounds) as excinfo:
        interpreter.run()
    assert excinfo.value.location.line == 1
    assert excinfo.value.location.column == 5


def test_move_right_past_configured_tape(make_interpreter):
    interpreter, _ = make_interpreter("ali ali", tape_size=2)
    with pytest.raises(OutOfBounds):
        interpreter.run()
    assert interpreter.tape.pointer == 1


def test_line_length_limit(make_interpreter):
    interpreter, _ = make_interpreter("kas " * 100)
    with pytest.raises(CapacityExceeded):
        interpreter.run()


def test_function_limit(make_interpreter):
    source = """
    nejatjobs a {
    }
    nejatjobs b {
    }
    """
    interpreter, _ = make_interpreter(source, max_functions=1)
    with pytest.raises(CapacityExceeded):
        interpreter.run()


def test_statement_limit(make_interpreter):
    source = """
    nejatjobs a {
    kas
    kas
    }
    """
    interpreter, _ = make_interpreter(source, max_statements=1)
    with pytest.raises(CapacityExceeded):
        interpreter.run()


def test_state_log_records_executed_lines(make_interpreter):
    interpreter, _ = make_interpreter("kas\nkasistan\n", verbose=True)
    interpreter.run()
    entries = list(interpreter.logger.entries)
    assert [e.location.statement for e in entries] == ["kas", "kasistan"]
    assert [e.step for e in entries] == [0, 1]
    assert (entries[-1].pointer, entries[-1].cell, entries[-1].sudo) == (0, 1, False)
    assert interpreter.logger.steps == 2


def test_state_log_stays_bounded_on_fan_out(make_interpreter):
    lines = ["nejatjobs f0 {", "kas kasistan", "}"]
    for level in range(1, 12):
        lines += [f"nejatjobs f{level} {{", f"f{level - 1} f{level - 1}", "}"]
    lines.append("f11")
    interpreter, output = make_interpreter("\n".join(lines))
    interpreter.run()
    assert len(output) == 2048
    assert interpreter.logger.steps > 4096
    assert len(interpreter.logger.entries) == 1
    assert interpreter.logger.frame_last_entry == {}
    assert interpreter.call_stack == []
    assert len(interpreter.io_log) == IO_LOG_LIMIT


def test_single_line_diagnostic(make_interpreter):
    interpreter, _ = make_interpreter("kas\nfoo\n")
    with pytest.raises(UnknownCommand) as excinfo:
        interpreter.run()
    text = TracebackFormatter(interpreter).format_text(excinfo.value, verbose=False)
    assert text == "<string>:2: UnknownCommand: Unknown command 'foo'"


def test_json_traceback(make_interpreter):
    import json

    source = """
    nejatjobs f {
    sahin
    }
    f
    """
    interpreter, _ = make_interpreter(source)
    with pytest.raises(OutOfBounds) as excinfo:
        interpreter.run()
    data = json.loads(TracebackFormatter(interpreter).to_json(excinfo.value))
    assert data["error"]["type"] == "OutOfBounds"
    assert data["error"]["step"] == 2
    assert data["tape"] == {"size": 30000, "pointer": 0, "cell": 0}
    assert [frame["name"] for frame in data["frames"]] == ["<top-level>", "f"]
    assert [frame["line"] for frame in data["frames"]] == [5, 3]
