"""Tests for workflow configuration loading."""

import pytest
import yaml

from workflow_mcp_server.config import Config, WorkflowConfig, merge_configs
from workflow_mcp_server.exceptions import ConfigurationError
from workflow_mcp_server.presets import PresetCatalog


def write_yaml(path, data):
    path.write_text(yaml.safe_dump(data))


class TestConfigLoad:
    """Directory loading and merging."""

    def test_merges_files_in_order(self, tmp_path):
        write_yaml(
            tmp_path / "a.yaml",
            {"review": {"prompt": "first", "tools": {"lint": "Run linters"}}},
        )
        write_yaml(
            tmp_path / "b.yml",
            {"review": {"prompt": "second", "tools": {"test": "Run tests"}}, "notes": {"prompt": "n"}},
        )
        (tmp_path / "ignored.txt").write_text("review: nope")

        config = Config.load(str(tmp_path))
        assert config.get_workflow_names() == ["review", "notes"]
        review = config.get_workflow("review")
        assert review.prompt == "second"
        assert review.tools == {"lint": "Run linters", "test": "Run tests"}
        assert config.config_dir == str(tmp_path.resolve())

    def test_bad_files_are_skipped(self, tmp_path):
        (tmp_path / "broken.yaml").write_text("review: [unclosed")
        (tmp_path / "list.yaml").write_text("- a\n- b\n")
        (tmp_path / "empty.yaml").write_text("")
        write_yaml(tmp_path / "ok.yaml", {"notes": {"prompt": "n"}})
        assert Config.load(str(tmp_path)).get_workflow_names() == ["notes"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            Config.load(str(tmp_path / "missing"))

    def test_presets_are_layered_under_user_files(self, tmp_path):
        presets = PresetCatalog(
            {
                "thinking": {
                    "generate_thought": {"prompt": "preset", "description": "Think"},
                    "plan_task": {"prompt": "plan"},
                }
            }
        )
        write_yaml(tmp_path / "local.yaml", {"generate_thought": {"prompt": "mine"}})
        config = Config.load(str(tmp_path), ["thinking"], presets)
        thought = config.get_workflow("generate_thought")
        assert thought.prompt == "mine"
        assert thought.description == "Think"
        assert config.get_workflow("plan_task").prompt == "plan"

    def test_unknown_preset(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Preset 'nope' not found"):
            Config.load(str(tmp_path), ["nope"], PresetCatalog({}))

    def test_invalid_workflow_is_named(self, tmp_path):
        write_yaml(tmp_path / "a.yaml", {"broken": {"parameters": {"x": {"type": "date"}}}})
        with pytest.raises(ConfigurationError, match="Invalid workflow 'broken'"):
            Config.load(str(tmp_path))

    def test_referenced_aliases(self):
        config = Config.from_declarations(
            {
                "proxy": {"externalServers": ["github", "atlassian"]},
                "script": {"steps": [{"call": "atlassian:jira_search"}, {"call": "slack:post"}]},
                "off": {"externalServers": ["hidden"], "disabled": True},
                "notes": {"prompt": "x"},
            }
        )
        assert config.referenced_aliases() == ["github", "atlassian", "slack"]


class TestWorkflowConfig:
    """Declaration validation and classification."""

    def test_kinds(self):
        assert WorkflowConfig.model_validate({"prompt": "x"}).kind == "prompt"
        assert WorkflowConfig.model_validate({"externalServers": ["a"]}).kind == "external"
        assert WorkflowConfig.model_validate({"steps": []}).kind == "scripted"
        steps_and_servers = {"steps": [{"call": "a:b"}], "externalServers": ["c"]}
        assert WorkflowConfig.model_validate(steps_and_servers).kind == "scripted"

    @pytest.mark.parametrize(
        "data,message",
        [
            ({"name": "bad:name"}, "must not contain ':'"),
            ({"externalServers": []}, "non-empty array"),
            ({"externalServers": [" "]}, "empty server alias"),
            ({"externalServers": ["a:b"]}, "must not contain ':'"),
            ({"externalServers": ["a", "a "]}, "duplicate external server alias 'a'"),
            ({"runtime": "scripted"}, "must declare steps"),
            ({"steps": [{"call": "nocolon"}]}, "exactly one ':'"),
            ({"toolMode": "random"}, "toolMode"),
        ],
    )
    def test_invalid_declarations(self, data, message):
        with pytest.raises(ConfigurationError, match=message):
            WorkflowConfig.from_declaration("wf", data)

    def test_non_mapping(self):
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            WorkflowConfig.from_declaration("wf", ["a"])

    def test_external_servers_are_trimmed(self):
        workflow = WorkflowConfig.model_validate({"externalServers": [" github "]})
        assert workflow.external_servers == ["github"]

    def test_names_and_descriptions(self):
        workflow = WorkflowConfig.model_validate({"prompt": "x"})
        assert workflow.tool_name("code_review") == "code_review"
        assert workflow.description_for("code_review") == "code review tool"
        named = WorkflowConfig.model_validate({"name": "review", "description": "Review code"})
        assert named.tool_name("code_review") == "review"
        assert named.description_for("code_review") == "Review code"


class TestMergeConfigs:
    """Declaration merging."""

    def test_string_tools_are_unioned(self):
        target = {"wf": {"tools": "a, b", "prompt": "x"}}
        merge_configs(target, {"wf": {"tools": "b, c"}})
        assert target["wf"] == {"tools": "a, b, c", "prompt": "x"}

    def test_mixed_tools_become_mapping(self):
        target = {"wf": {"tools": "a"}}
        merge_configs(target, {"wf": {"tools": {"b": {"optional": True}}}})
        assert target["wf"]["tools"] == {"a": "", "b": {"optional": True}}

    def test_tool_entries_merge(self):
        target = {"wf": {"tools": {"a": {"description": "A"}}}}
        merge_configs(target, {"wf": {"tools": {"a": {"optional": True}}}})
        assert target["wf"]["tools"]["a"] == {"description": "A", "optional": True}

    def test_non_mapping_replaces(self):
        target = {"wf": {"prompt": "x"}}
        merge_configs(target, {"wf": None, "new": {"prompt": "y"}})
        assert target == {"wf": None, "new": {"prompt": "y"}}


class TestPresetCatalog:
    """Bundled presets."""

    def test_bundled_presets_load(self):
        catalog = PresetCatalog.load()
        assert "thinking" in catalog.available()
        declarations = catalog.declarations(["thinking"])
        assert set(declarations) == {"generate_thought", "plan_task"}
        assert catalog.default_prompt("plan_task").startswith("# Plan Task")
        assert catalog.default_prompt("unknown") is None

    def test_bundled_presets_validate(self):
        config = Config.from_declarations(PresetCatalog.load().declarations(["thinking"]))
        assert config.get_workflow("plan_task").tool_mode == "sequential"

    def test_missing_directory_falls_back(self, tmp_path):
        catalog = PresetCatalog.load(str(tmp_path / "missing"))
        assert "thinking" in catalog.available()

    def test_custom_directory(self, tmp_path):
        write_yaml(tmp_path / "team.yaml", {"standup": {"prompt": "Summarize"}})
        (tmp_path / "broken.yaml").write_text("a: [")
        catalog = PresetCatalog.load(str(tmp_path))
        assert catalog.available() == ["team"]
