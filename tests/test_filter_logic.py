from aiwg_workspace.services.filter_logic import PathFilter, default_ignore_filter


def test_defaults_ignored():
    pf = default_ignore_filter()
    assert pf.matches(".git/config")
    assert pf.matches("frameworks/f/repo/__pycache__/file.pyc")
    assert pf.matches("temp_file.tmp")
    assert not pf.matches("frameworks/f/repo/main.md")


def test_custom_patterns():
    pf = PathFilter(["*.md", "templates/"])
    assert pf.matches("README.md")
    assert pf.matches("repo/templates/intake.yaml")
    assert not pf.matches("notes.txt")


def test_nested_wildcards():
    pf = PathFilter(["**/agents/**"])
    assert pf.matches("repo/agents/writer.md")
    assert not pf.matches("repo/commands/run.md")


def test_empty_patterns_are_dropped():
    pf = PathFilter(["", "*.md", None])
    assert pf.patterns == ["*.md"]
