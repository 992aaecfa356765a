"""Tag rules: process naming, type mapping, filtering and application naming."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Pattern, Union

import yaml

from openagent.hashutil import file_hash, struct_hash

PARAM_TAGRULE = 600

JAVA_TAGS = ("spring", "kafka", "zookeeper")
GO_TAGS = ("gin", "sarama", "chi", "gorm", "fiber", "redigo", "gorilla", "fasthttp")

APP_NAME_DEFAULT_PROCESS_TYPE = "process_type"
APP_NAME_DEFAULT_HOST_TAG = "host_tag"


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _str_list(value: Any, name: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"{name} must be a list")
    return [_text(item) for item in value]


def _mapping(value: Any, name: str) -> Mapping[Any, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{name} must be a mapping")
    return value


def _compile(pattern: str) -> Optional[Pattern[str]]:
    try:
        return re.compile(pattern)
    except re.error:
        return None


def _find(regex: Optional[Pattern[str]], text: str) -> str:
    """Return the leftmost match of *regex* in *text*, or "" when there is none."""
    if regex is None:
        return ""
    match = regex.search(text)
    return match.group(0) if match else ""


@dataclass(frozen=True)
class AppNameKey:
    """One condition under which a process gets a given application name.

    Empty fields match anything.
    """

    process_tag: str = ""
    process_type: str = ""
    host_name: str = ""
    ip: str = ""
    port: str = ""

    def matches(self, process_tag: str, process_type: str, host_name: str,
                ip: str, port: str) -> bool:
        return ((self.host_name == "" or self.host_name == host_name)
                and (self.process_type == "" or self.process_type == process_type)
                and (self.ip == "" or self.ip == ip)
                and (self.port == "" or self.port == port)
                and (self.process_tag == "" or self.process_tag == process_tag))

    @classmethod
    def _from_yaml(cls, data: Any) -> "AppNameKey":
        data = _mapping(data, "appName entry")
        return cls(process_tag=_text(data.get("process_tag")),
                   process_type=_text(data.get("process_type")),
                   host_name=_text(data.get("host_tag")),
                   ip=_text(data.get("ip")),
                   port=_text(data.get("port")))

    def _to_yaml(self) -> Dict[str, str]:
        return {"process_tag": self.process_tag, "process_type": self.process_type,
                "host_tag": self.host_name, "ip": self.ip, "port": self.port}

    @classmethod
    def _from_wire(cls, data: Any) -> "AppNameKey":
        data = _mapping(data, "appName entry")
        return cls(process_tag=_text(data.get("processTag")),
                   process_type=_text(data.get("processType")),
                   host_name=_text(data.get("hostName")),
                   ip=_text(data.get("ip")),
                   port=_text(data.get("port")))

    def _to_wire(self) -> Dict[str, str]:
        return {"processTag": self.process_tag, "processType": self.process_type,
                "hostName": self.host_name, "ip": self.ip, "port": self.port}


@dataclass
class TagConfig:
    """The tag rule document, as kept on disk and exchanged with the server."""

    process_regex: List[str] = field(default_factory=list)
    process_white_list: List[str] = field(default_factory=list)
    process_black_list: List[str] = field(default_factory=list)
    process_type: Dict[str, List[str]] = field(default_factory=dict)
    app_name: Dict[str, List[AppNameKey]] = field(default_factory=dict)
    app_name_default: str = ""
    untag_option: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, text: Union[str, bytes]) -> "TagConfig":
        """Parse the YAML rule file; raises ValueError on a malformed document."""
        data = yaml.safe_load(text)
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ValueError("tag rule document must be a mapping")
        return cls(
            process_regex=_str_list(data.get("processRegEx"), "processRegEx"),
            process_white_list=_str_list(data.get("processWhiteList"), "processWhiteList"),
            process_black_list=_str_list(data.get("processBlackList"), "processBlackList"),
            process_type={
                _text(key): _str_list(values, "processType")
                for key, values in _mapping(data.get("processType"), "processType").items()
            },
            app_name={
                _text(key): [AppNameKey._from_yaml(item)
                             for item in (entries or [])]
                for key, entries in _mapping(data.get("appName"), "appName").items()
            },
            app_name_default=_text(data.get("appNameDefault")),
            untag_option={
                _text(ip): {_text(port): _text(value)
                            for port, value in _mapping(ports, "untagOption").items()}
                for ip, ports in _mapping(data.get("untagOption"), "untagOption").items()
            },
        )

    def to_yaml(self) -> str:
        """Render the rule document as YAML."""
        document = {
            "processRegEx": list(self.process_regex),
            "processWhiteList": list(self.process_white_list),
            "processBlackList": list(self.process_black_list),
            "processType": {key: list(values) for key, values in self.process_type.items()},
            "appName": {key: [entry._to_yaml() for entry in entries]
                        for key, entries in self.app_name.items()},
            "appNameDefault": self.app_name_default,
            "untagOption": {ip: dict(ports) for ip, ports in self.untag_option.items()},
        }
        return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)

    @classmethod
    def from_mapping(cls, data: Any) -> "TagConfig":
        """Build a config from the server's ``data`` mapping.

        Raises ValueError when the data is missing or lacks a required field.
        """
        if data is None:
            raise ValueError("Data Field NULL")
        if not isinstance(data, Mapping):
            raise ValueError("tag rule data must be a mapping")
        try:
            app_name: Dict[str, List[AppNameKey]] = {}
            for key, entries in _mapping(data["appName"], "appName").items():
                app_name[_text(key)] = [AppNameKey._from_wire(entry)
                                        for entry in _mapping(entries, "appName").values()]
            return cls(
                process_regex=_str_list(data["processRegEx"], "processRegEx"),
                process_white_list=_str_list(data["processWhiteList"], "processWhiteList"),
                process_black_list=_str_list(data["processBlackList"], "processBlackList"),
                process_type={
                    _text(key): _str_list(values, "processType")
                    for key, values in _mapping(data["processType"], "processType").items()
                },
                app_name=app_name,
                app_name_default=_text(data.get("appNameDefault")),
                untag_option={
                    _text(ip): {_text(port): _text(value)
                                for port, value in _mapping(ports, "untagOption").items()}
                    for ip, ports in _mapping(data["untagOption"], "untagOption").items()
                },
            )
        except KeyError as exc:
            raise ValueError(f"tag rule data lacks field {exc.args[0]!r}") from None

    def to_mapping(self) -> Dict[str, Any]:
        """Return the server's mapping form; app name entries are keyed by their hash."""
        return {
            "processRegEx": list(self.process_regex),
            "processWhiteList": list(self.process_white_list),
            "processBlackList": list(self.process_black_list),
            "processType": {key: list(values) for key, values in self.process_type.items()},
            "appName": {key: {struct_hash(entry): entry._to_wire() for entry in entries}
                        for key, entries in self.app_name.items()},
            "appNameDefault": self.app_name_default,
            "untagOption": {ip: dict(ports) for ip, ports in self.untag_option.items()},
        }

    def digest(self) -> str:
        """Return a hash of the content that ignores mapping order."""
        canonical = (
            tuple(self.process_regex),
            tuple(self.process_white_list),
            tuple(self.process_black_list),
            tuple(sorted((key, tuple(values)) for key, values in self.process_type.items())),
            tuple(sorted((key, tuple(entries)) for key, entries in self.app_name.items())),
            self.app_name_default,
            tuple(sorted((ip, tuple(sorted(ports.items())))
                         for ip, ports in self.untag_option.items())),
        )
        return struct_hash(canonical)


class TagRules:
    """The active tag rules used to name, type and filter processes."""

    def __init__(self) -> None:
        self.process_map: Dict[str, str] = {}
        self.tag_regex: Optional[Pattern[str]] = None
        self.go_tag_regex: Optional[Pattern[str]] = None
        self.java_tag_regex: Optional[Pattern[str]] = None
        self.white_list: Optional[Pattern[str]] = None
        self.black_list: Optional[Pattern[str]] = None
        self.process_all = True
        self.app_name_map: Dict[str, List[AppNameKey]] = {}
        self.app_name_default = ""

    def apply(self, config: TagConfig) -> None:
        """Install every rule of *config*."""
        self.set_process_lists(config.process_white_list, config.process_black_list)
        self.tag_regex = _compile("|".join(config.process_regex)) if config.process_regex else None
        self.set_process_type_mapping(config.process_type)
        self.app_name_map = {key: list(entries) for key, entries in config.app_name.items()}
        self.app_name_default = config.app_name_default

    def set_process_lists(self, white: Iterable[str], black: Iterable[str]) -> None:
        """Set the white and black lists; an empty white list admits every process."""
        white = list(white)
        black = list(black)
        if white:
            self.process_all = False
            self.white_list = _compile("|".join(white))
        else:
            self.process_all = True
        self.black_list = _compile("|".join(black)) if black else None

    def set_process_type_mapping(self, mapping: Mapping[str, Iterable[str]]) -> None:
        """Map tag names to process types, on top of the built-in framework tags."""
        for tag in (*JAVA_TAGS, *GO_TAGS):
            self.process_map[tag] = tag
        for process_type, tags in mapping.items():
            for tag in tags:
                self.process_map[tag] = process_type
        self.go_tag_regex = _compile("|".join(GO_TAGS))
        self.java_tag_regex = _compile("|".join(JAVA_TAGS))

    def java_tag(self, text: str) -> str:
        """Return the Java framework tag found in *text*, or ""."""
        return _find(self.java_tag_regex, text)

    def go_tag(self, text: str) -> str:
        """Return the Go framework tag found in *text*, or ""."""
        return _find(self.go_tag_regex, text)

    def tag_name(self, process_name: str) -> str:
        """Return the part of the name the tag regex picks out, else the name itself."""
        return _find(self.tag_regex, process_name) or process_name

    def process_type(self, tag_name: str) -> str:
        """Return the process type mapped to the tag, else the tag itself."""
        return self.process_map.get(tag_name, tag_name)

    def is_allowed(self, tag_name: str) -> bool:
        """Whether the white and black lists let this process through."""
        if not (self.process_all or _find(self.white_list, tag_name)):
            return False
        return not _find(self.black_list, tag_name)

    def find_app_name(self, process_tag: str, process_type: str, host_name: str,
                      ip: str, port: str) -> str:
        """Return the first application name whose conditions match, or ""."""
        for name, entries in self.app_name_map.items():
            if any(entry.matches(process_tag, process_type, host_name, ip, port)
                   for entry in entries):
                return name
        return ""

    def default_app_name(self, process_type: str, host_tag: str) -> str:
        """Return the application name used when no mapping matches."""
        if self.app_name_default == APP_NAME_DEFAULT_PROCESS_TYPE:
            return process_type
        if self.app_name_default in (APP_NAME_DEFAULT_HOST_TAG, ""):
            return host_tag
        return self.app_name_default


Sender = Callable[[str, Dict[str, Any]], None]


class TagRuleFile:
    """The tag rule file on disk and the server copy waiting beside it."""

    def __init__(self, path: Union[str, os.PathLike], reset: int = 0,
                 send: Optional[Sender] = None) -> None:
        self.path = Path(path)
        self.reset = reset
        self._send = send
        self.file_hash = ""
        self.config_hash = ""

    @property
    def server_path(self) -> Path:
        return self.path.with_name(self.path.name + ".server")

    def check(self) -> Optional[TagConfig]:
        """Load the rule file if it changed since the last check.

        A pending server copy replaces the file first. Returns None when the
        content is unchanged; a changed file is reported to the sender with
        command "put" when reset is 1 and "set" otherwise.
        """
        if self.server_path.exists():
            os.replace(self.server_path, self.path)
        try:
            digest = file_hash(self.path)
        except OSError:
            digest = ""
        if digest == self.file_hash:
            return None
        self.file_hash = digest
        config = TagConfig.from_yaml(self.path.read_text(encoding="utf-8"))
        if self._send is not None:
            self._send("put" if self.reset == 1 else "set", config.to_mapping())
        self.config_hash = config.digest()
        return config

    def store_server_copy(self, config: TagConfig) -> bool:
        """Write a config received from the server beside the rule file.

        Returns False, writing nothing, when it equals the last loaded config.
        """
        if config.digest() == self.config_hash:
            return False
        self.server_path.write_text(config.to_yaml(), encoding="utf-8")
        return True