from palaver.prompts import (
    DEFAULT_SYSTEM_PROMPT,
    FILE_TREE_HEADER,
    build_system_prompt,
    resolve_default_prompt,
)


def test_without_project_the_base_prompt_is_unchanged():
    assert build_system_prompt("Be brief.") == "Be brief."


def test_project_prompt_lists_tools_and_tree():
    prompt = build_system_prompt(
        "Be brief.",
        root_path="/work/demo",
        tool_names=["read_file", "list_files"],
        file_tree="demo/\n└── main.py",
    )

    assert prompt.startswith("Be brief.\n\n")
    assert "/work/demo" in prompt
    assert "- read_file\n- list_files" in prompt
    assert f"{FILE_TREE_HEADER}\n```\ndemo/\n└── main.py\n```" in prompt


def test_resolve_default_prompt(store):
    assert resolve_default_prompt(None) == DEFAULT_SYSTEM_PROMPT
    assert resolve_default_prompt(store) == DEFAULT_SYSTEM_PROMPT

    store.set_default_prompt("Custom instruction")

    assert resolve_default_prompt(store) == "Custom instruction"
