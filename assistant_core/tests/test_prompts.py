from assistant_core import prompts
from assistant_core.prompts import load_system_prompt


def test_placeholders_are_filled_and_other_braces_kept(tmp_path, monkeypatch):
    (tmp_path / "bash.md").write_text(
        'Shell: {shell} on {os}.\nExample: echo "${HOME}" and {"key": 1}\n', encoding="utf-8"
    )
    monkeypatch.setattr(prompts, "PROMPTS_DIR", tmp_path)

    text = load_system_prompt("bash", os="Linux", shell="/bin/zsh")
    assert text == 'Shell: /bin/zsh on Linux.\nExample: echo "${HOME}" and {"key": 1}'


def test_unknown_mode_has_no_prompt(tmp_path, monkeypatch):
    monkeypatch.setattr(prompts, "PROMPTS_DIR", tmp_path)
    assert load_system_prompt("poetry", os="Linux") == ""


def test_bundled_prompts_render():
    text = load_system_prompt("bash", os="Darwin", shell="/bin/bash")
    assert "Darwin" in text
    assert "{os}" not in text
    assert "{shell}" not in text
