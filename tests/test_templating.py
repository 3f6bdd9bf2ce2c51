import pytest

from batchexec.errors import TemplateError
from batchexec.models import (
    BatchChangeAttributes,
    ChangedFiles,
    Repository,
    StepContext,
    StepResult,
    Value,
    ValueKind,
)
from batchexec.templating import (
    evaluate_condition,
    evaluate_expression,
    evaluate_template,
    parse_template,
    render_template,
)


def _context() -> StepContext:
    return StepContext(
        repository=Repository("github.com/sourcegraph/src-cli", revision="d34db33f"),
        path="cmd/src",
        batch_change=BatchChangeAttributes(
            name="hello-world",
            description="Add hello world",
            author_name="Batch Bot",
            author_email="bot@example.com",
        ),
    )


def _after_one_step() -> StepContext:
    result = StepResult(
        stdout="hello\n",
        stderr="",
        files=ChangedFiles(modified=("go.mod", "main.go"), added=("README.md",)),
    )
    return _context().with_step(result, {"myOutput": Value.of_string("hello")})


def test_plain_text_is_returned_unchanged() -> None:
    assert render_template("echo hello > hello.txt", _context()) == "echo hello > hello.txt"
    assert parse_template("no placeholders") == ("no placeholders",)


def test_repository_and_batch_change_paths() -> None:
    context = _context()

    rendered = render_template(
        "${{ repository.name }}@${{ repository.revision }} in ${{ repository.path }}", context
    )

    assert rendered == "github.com/sourcegraph/src-cli@d34db33f in cmd/src"
    assert render_template("${{ batch_change.name }}", context) == "hello-world"
    assert render_template("${{batch_change.author_email}}", context) == "bot@example.com"
    assert render_template("${{ steps.path }}", context) == "cmd/src"


def test_previous_step_files_with_spaced_and_parenthesized_join() -> None:
    context = _after_one_step()

    spaced = render_template('modified-${{ join previous_step.modified_files " " }}.md', context)
    called = render_template('${{ join(previous_step.modified_files, ",") }}', context)

    assert spaced == "modified-go.mod main.go.md"
    assert called == "go.mod,main.go"


def test_list_values_render_with_brackets_inside_text() -> None:
    context = _after_one_step()

    assert render_template("files: ${{ previous_step.modified_files }}", context) == (
        "files: [go.mod main.go]"
    )


def test_lone_placeholder_keeps_value_kind() -> None:
    value = evaluate_template("${{ previous_step.added_files }}", _after_one_step())

    assert value.kind is ValueKind.LIST
    assert value.items == ("README.md",)


def test_previous_step_before_any_step_is_an_error() -> None:
    with pytest.raises(TemplateError, match="previous_step"):
        render_template("${{ previous_step.stdout }}", _context())


def test_step_is_only_bound_while_rendering_outputs() -> None:
    with pytest.raises(TemplateError, match="only available in step outputs"):
        render_template("${{ step.stdout }}", _context())

    bound = _context().bind_current(StepResult(stdout="hello\r\n"))
    assert render_template("${{ step.stdout }}", bound) == "hello"


def test_outputs_are_visible_to_later_steps() -> None:
    context = _after_one_step()

    assert render_template("output-${{ outputs.myOutput }}.txt", context) == "output-hello.txt"
    with pytest.raises(TemplateError, match="not defined"):
        render_template("${{ outputs.missing }}", context)


def test_unknown_paths_fail_closed() -> None:
    with pytest.raises(TemplateError, match="unresolved identifier"):
        render_template("${{ repository.owner }}", _context())
    with pytest.raises(TemplateError, match="unresolved identifier"):
        render_template("${{ previous_step.nonsense }}", _after_one_step())


def test_wrong_arity_is_an_error() -> None:
    with pytest.raises(TemplateError, match="wrong number of arguments for join"):
        render_template("${{ join(previous_step.modified_files) }}", _after_one_step())


def test_parse_errors() -> None:
    with pytest.raises(TemplateError, match="unterminated placeholder"):
        parse_template("echo ${{ repository.name")
    with pytest.raises(TemplateError, match="unterminated string"):
        evaluate_expression('eq repository.name "repoB', _context())
    with pytest.raises(TemplateError, match="expected 'ident'"):
        parse_template("${{ repository.name. }}")
    with pytest.raises(TemplateError, match="empty expression"):
        parse_template("${{ }}")


def test_closing_delimiter_inside_string_literal() -> None:
    assert render_template('${{ replace "a}}b" "}}" "-" }}', _context()) == "a-b"


def test_comparison_and_boolean_functions() -> None:
    context = _context()

    assert evaluate_expression('eq repository.name "repoB"', context) == Value.of_bool(False)
    assert evaluate_expression('ne(repository.name, "repoB")', context) == Value.of_bool(True)
    assert render_template('${{ not (eq repository.name "repoB") }}', context) == "true"
    assert render_template("${{ and(true, false) }}", context) == "false"
    assert render_template("${{ or(false, true, false) }}", context) == "true"
    assert render_template('${{ matches repository.name "github.com/*" }}', context) == "true"


def test_string_functions() -> None:
    context = _context()

    assert render_template('${{ join(split("a,b,c", ","), "-") }}', context) == "a-b-c"
    assert render_template('${{ replace repository.name "/" "_" }}', context) == (
        "github.com_sourcegraph_src-cli"
    )
    assert render_template('${{ join_if "-" "a" "" "b" }}', context) == "a-b"


def test_cumulative_step_files() -> None:
    context = _after_one_step().with_step(
        StepResult(files=ChangedFiles(modified=("main.go", "util.go")))
    )

    assert render_template('${{ join steps.modified_files " " }}', context) == (
        "go.mod main.go util.go"
    )


def test_conditions_use_go_style_booleans() -> None:
    context = _context()

    assert evaluate_condition('${{ eq repository.name "github.com/sourcegraph/src-cli" }}', context)
    assert not evaluate_condition('${{ eq repository.name "repoB" }}', context)
    assert evaluate_condition("1", context)
    assert evaluate_condition(" True ", context)
    assert not evaluate_condition("yes", context)
    assert not evaluate_condition("", context)
