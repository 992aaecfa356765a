import pytest

from openagent.hashutil import struct_hash
from openagent.tagrules import AppNameKey, TagConfig, TagRuleFile, TagRules


def _sample_config():
    return TagConfig(
        process_regex=["nginx", "httpd"],
        process_white_list=[],
        process_black_list=["sshd"],
        process_type={"web": ["nginx", "httpd"]},
        app_name={
            "shop": [AppNameKey(process_type="web", port="8080")],
            "batch": [AppNameKey(process_tag="cron", host_name="node-a")],
        },
        app_name_default="process_type",
        untag_option={"10.0.0.1": {"80": "front"}},
    )


def test_builtin_framework_tags_map_to_themselves():
    rules = TagRules()
    rules.set_process_type_mapping({})
    assert rules.process_type("spring") == "spring"
    assert rules.process_type("fasthttp") == "fasthttp"
    assert rules.process_type("unknown-app") == "unknown-app"


def test_custom_process_type_mapping():
    rules = TagRules()
    rules.set_process_type_mapping({"web": ["nginx", "kafka"]})
    assert rules.process_type("nginx") == "web"
    assert rules.process_type("kafka") == "web"


def test_framework_tag_regexes():
    rules = TagRules()
    rules.set_process_type_mapping({})
    assert rules.java_tag("/opt/app/kafka-server.jar") == "kafka"
    assert rules.go_tag("github.com/gin-gonic") == "gin"
    assert rules.java_tag("plain") == ""


def test_tag_name_uses_regex_or_falls_back():
    rules = TagRules()
    rules.apply(_sample_config())
    assert rules.tag_name("nginx: worker process") == "nginx"
    assert rules.tag_name("postgres") == "postgres"


def test_tag_name_without_regex_is_identity():
    rules = TagRules()
    assert rules.tag_name("redis-server") == "redis-server"


def test_is_allowed_black_and_white_lists():
    rules = TagRules()
    rules.set_process_lists([], ["sshd"])
    assert rules.is_allowed("nginx") is True
    assert rules.is_allowed("sshd") is False

    rules.set_process_lists(["java"], [])
    assert rules.is_allowed("java") is True
    assert rules.is_allowed("python") is False


def test_invalid_white_list_admits_nothing():
    rules = TagRules()
    rules.set_process_lists(["("], [])
    assert rules.is_allowed("anything") is False


def test_find_app_name_matches_conditions():
    rules = TagRules()
    rules.apply(_sample_config())
    assert rules.find_app_name("nginx", "web", "node-b", "10.0.0.2", "8080") == "shop"
    assert rules.find_app_name("cron", "cron", "node-a", "", "") == "batch"
    assert rules.find_app_name("cron", "cron", "node-b", "", "") == ""


def test_default_app_name_modes():
    rules = TagRules()
    assert rules.default_app_name("web", "host1") == "host1"
    rules.app_name_default = "process_type"
    assert rules.default_app_name("web", "host1") == "web"
    rules.app_name_default = "host_tag"
    assert rules.default_app_name("web", "host1") == "host1"
    rules.app_name_default = "fixed"
    assert rules.default_app_name("web", "host1") == "fixed"


def test_yaml_round_trip():
    config = _sample_config()
    assert TagConfig.from_yaml(config.to_yaml()) == config


def test_yaml_keys_and_scalar_ports():
    text = (
        "processRegEx: [nginx]\n"
        "appName:\n"
        "  shop:\n"
        "    - process_type: web\n"
        "      host_tag: node-a\n"
        "      port: 8080\n"
        "appNameDefault: host_tag\n"
    )
    config = TagConfig.from_yaml(text)
    assert config.process_regex == ["nginx"]
    assert config.app_name["shop"] == [AppNameKey(process_type="web", host_name="node-a", port="8080")]
    assert config.app_name_default == "host_tag"
    assert config.process_white_list == []


def test_empty_yaml_gives_empty_config():
    assert TagConfig.from_yaml("") == TagConfig()


def test_yaml_non_mapping_rejected():
    with pytest.raises(ValueError):
        TagConfig.from_yaml("- a\n- b\n")


def test_mapping_round_trip_and_hash_keys():
    config = _sample_config()
    mapping = config.to_mapping()
    entry = config.app_name["shop"][0]
    assert list(mapping["appName"]["shop"]) == [struct_hash(entry)]
    assert mapping["appName"]["shop"][struct_hash(entry)]["processType"] == "web"
    assert TagConfig.from_mapping(mapping) == config


def test_from_mapping_none_raises():
    with pytest.raises(ValueError, match="Data Field NULL"):
        TagConfig.from_mapping(None)


def test_from_mapping_missing_field_raises():
    mapping = _sample_config().to_mapping()
    del mapping["processType"]
    with pytest.raises(ValueError):
        TagConfig.from_mapping(mapping)


def test_digest_tracks_content_not_order():
    first = _sample_config()
    second = _sample_config()
    second.app_name = dict(reversed(list(second.app_name.items())))
    assert first.digest() == second.digest()
    second.app_name_default = "host_tag"
    assert first.digest() != second.digest()


def test_rule_file_check_loads_once(tmp_path):
    path = tmp_path / "tagrule.yaml"
    path.write_text(_sample_config().to_yaml(), encoding="utf-8")
    sent = []
    rule_file = TagRuleFile(path, send=lambda cmd, data: sent.append((cmd, data)))

    config = rule_file.check()
    assert config == _sample_config()
    assert [cmd for cmd, _ in sent] == ["set"]
    assert sent[0][1] == _sample_config().to_mapping()
    assert rule_file.check() is None
    assert len(sent) == 1


def test_rule_file_reset_sends_put(tmp_path):
    path = tmp_path / "tagrule.yaml"
    path.write_text(_sample_config().to_yaml(), encoding="utf-8")
    sent = []
    TagRuleFile(path, reset=1, send=lambda cmd, data: sent.append(cmd)).check()
    assert sent == ["put"]


def test_rule_file_missing_file_is_unchanged(tmp_path):
    rule_file = TagRuleFile(tmp_path / "absent.yaml")
    assert rule_file.check() is None


def test_server_copy_replaces_rule_file(tmp_path):
    path = tmp_path / "tagrule.yaml"
    path.write_text(TagConfig().to_yaml(), encoding="utf-8")
    rule_file = TagRuleFile(path)
    assert rule_file.check() == TagConfig()

    assert rule_file.store_server_copy(_sample_config()) is True
    assert rule_file.server_path.exists()

    loaded = rule_file.check()
    assert loaded == _sample_config()
    assert not rule_file.server_path.exists()
    assert TagConfig.from_yaml(path.read_text(encoding="utf-8")) == _sample_config()


def test_server_copy_skipped_when_unchanged(tmp_path):
    path = tmp_path / "tagrule.yaml"
    path.write_text(_sample_config().to_yaml(), encoding="utf-8")
    rule_file = TagRuleFile(path)
    rule_file.check()
    assert rule_file.store_server_copy(_sample_config()) is False
    assert not rule_file.server_path.exists()