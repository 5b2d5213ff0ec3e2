"""
Prompt Builder Tests
====================
Covers:
    - Repair prompt carries error details, analysis and file sections
    - Relevant-file ordering and truncation
    - Rule-table analysis hints
    - Re-prompt for unmatched search blocks
"""
from selfheal.llm.prompts import (
    MAX_FILE_CHARS,
    analyze_error,
    build_repair_prompt,
    build_reprompt,
    select_relevant_files,
)
from selfheal.models.build_error import BuildContext, BuildError, ErrorContext
from selfheal.models.patch import PatchFailure


def _make_error(error_type="runtime", message="TypeError: Cannot read properties of undefined (reading 'map')",
                file=None, line=None, column=None, stack=None):
    return BuildError(
        id="error_1_0", type=error_type, severity="error", message=message, confidence=70,
        file=file, line=line, column=column, stack=stack,
        context=ErrorContext(logs=["> npm run build", message]),
    )


def test_repair_prompt_sections():
    context = BuildContext(command="npm run build", exit_code=1, files={"src/App.js": "const a = 1;\n"})
    prompt = build_repair_prompt(_make_error(file="src/App.js", line=3), context)

    assert prompt.startswith("PROJECT PHOENIX: Build error detected")
    assert "- Type: runtime" in prompt
    assert "- Likely cause: Null/undefined value being accessed" in prompt
    assert "- Exit code: 1" in prompt
    assert "RELEVANT FILES (1 of 1):" in prompt
    assert '<current path="src/App.js">\nconst a = 1;\n\n</current>' in prompt
    assert "- Error location: src/App.js:3" in prompt


def test_prompt_without_files():
    prompt = build_repair_prompt(_make_error(), BuildContext())
    assert "(no files provided)" in prompt
    assert "- Exit code: Unknown" in prompt


def test_relevant_files_order_and_limit():
    files = {"README.md": "", "src/util.js": "", "src/App.js": "", "package-lock.txt": ""}
    error = _make_error(file="App.js")

    assert select_relevant_files(files, error) == ["src/App.js", "src/util.js", "README.md", "package-lock.txt"]
    assert select_relevant_files(files, error, limit=2) == ["src/App.js", "src/util.js"]


def test_long_files_are_truncated():
    big = "x" * (MAX_FILE_CHARS + 10)
    prompt = build_repair_prompt(_make_error(), BuildContext(files={"big.js": big}))
    assert "[truncated 10 chars]" in prompt


def test_analysis_hints():
    missing = analyze_error(_make_error("dependency", "Cannot find module 'lodash'"))
    assert missing.likely_cause == "A required package or local module is missing"
    assert "Missing module: lodash" in missing.hints

    undefined = analyze_error(_make_error(message="ReferenceError: foo is not defined"))
    assert "Undefined identifier: foo" in undefined.hints

    stacked = analyze_error(_make_error(stack="    at a (x.js:1:1)\n    at b (y.js:2:2)"))
    assert stacked.hints[-2:] == ("Stack 1: at a (x.js:1:1)", "Stack 2: at b (y.js:2:2)")


def test_analysis_flags_file_outside_map():
    analysis = analyze_error(_make_error(file="src/missing.js", line=1), {"src/App.js": ""})
    assert "src/missing.js is not in the provided file map" in analysis.hints


def test_reprompt_lists_failures_with_current_content():
    failures = [PatchFailure(path="src/App.js", search="old()", error="Search block not found in file.")]
    prompt = build_reprompt(failures, {"src/App.js": "new();\n"})

    assert prompt.startswith("REPAIR NEEDED: 1 of your patches could not be applied.")
    assert "FILE: src/App.js" in prompt
    assert "CURRENT CONTENT:\nnew();\n" in prompt
