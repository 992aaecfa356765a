"""Process discovery: naming, language detection and application tagging."""

from __future__ import annotations

import dataclasses
import logging
import os
import socket
import struct
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Sequence, Tuple

import psutil

from openagent.tagrules import TagRules

log = logging.getLogger(__name__)

TEMP_NAME = "Temporary Process"
UNKNOWN = "UNKNOWN"

_ELF_MAGIC = b"\x7fELF"
_SHT_SYMTAB = 2
_STT_OBJECT = 1
_GO_BUILD_ID = ".note.go.buildid"
_GNU_BUILD_ID = ".note.gnu.build-id"


@dataclass
class ProcessInfo:
    """What the agent knows about one process."""

    pid: int = 0
    process_name: str = ""
    process_tag_name: str = ""
    process_type: str = ""
    app_name: str = ""
    language_type: str = ""
    add_info_type: str = ""
    host_name: str = ""
    namespace: str = ""
    pod_name: str = ""
    container_name: str = ""
    pod_id: str = ""
    container_id: str = ""


def temporary_process(rules: TagRules, host_tag: str, k8s: bool) -> ProcessInfo:
    """Return the placeholder used when a process can no longer be inspected."""
    if k8s:
        host_tag = f"{host_tag}[default][node]"
    return ProcessInfo(
        pid=-1,
        process_name=TEMP_NAME,
        process_tag_name=TEMP_NAME,
        process_type=TEMP_NAME,
        app_name=rules.default_app_name(TEMP_NAME, host_tag),
    )


def parse_cgroup_line(line: str) -> Optional[Tuple[str, str]]:
    """Extract ``(pod_id, container_id)`` from a cgroup line, or None."""
    fields = line.split(":")
    if len(fields) != 3:
        return None
    path = fields[2].split("/")
    if len(path) != 5:
        return None

    pod_part = path[3]
    if pod_part.startswith("pod"):
        pod_id = pod_part
    else:
        pod_id = pod_part.split("-")[-1]
        if not pod_id.startswith("pod") or len(pod_id) < 9:
            return None
        pod_id = pod_id[3:-6].replace("_", "-")

    container_id = path[4].split("-")[-1]
    if len(container_id) <= 6:
        return None
    return pod_id, container_id[:-6]


def search_k8s_uid(pid: int, proc_dir: Optional[str] = None) -> Tuple[str, str]:
    """Find the pod and container ids of *pid* from its cgroup file.

    Raises OSError when the cgroup file cannot be read; returns ``("", "")``
    when no line identifies a pod.
    """
    if proc_dir is None:
        proc_dir = os.environ.get("HOST_PROC", "")
    cgroup_path = Path(proc_dir) / str(pid) / "cgroup"
    with open(cgroup_path, encoding="utf-8", errors="replace") as handle:
        for raw in handle:
            line = raw.rstrip("\n")
            ids = parse_cgroup_line(line)
            if ids is None:
                log.debug("SearchK8SUID: %s", line)
                continue
            return ids
    return "", ""


def parse_java_cmdline(cmdline: Sequence[str], rules: TagRules) -> Tuple[str, str, str]:
    """Return ``(name, process_type, add_info_type)`` for a Java command line."""
    java_name = "java"
    java_type = ""
    classpath_seen = False

    args = iter(cmdline)
    for arg in args:
        if arg.startswith("-"):
            option = arg[1:]
            if option.startswith("cp") or option.startswith("classpath"):
                classpath_seen = True
                next(args, None)
            elif option.startswith("D"):
                if rules.java_tag_regex is None:
                    continue
                tag = rules.java_tag(arg)
                if tag:
                    java_type = rules.process_map.get(tag, "")
        elif ".jar" in arg:
            java_name = arg
        elif classpath_seen:
            java_name = arg
            classpath_seen = False

    tag = rules.java_tag(java_name)
    if tag:
        process_type = rules.process_map.get(tag, "")
    else:
        process_type = java_type or java_name
    return java_name, process_type, tag + java_name


class _ElfFile:
    """Minimal reader of ELF section headers and the symbol table."""

    def __init__(self, handle: BinaryIO) -> None:
        self._handle = handle
        ident = handle.read(16)
        if len(ident) < 16 or ident[:4] != _ELF_MAGIC:
            raise ValueError("not an ELF file")
        if ident[5] == 1:
            order = "<"
        elif ident[5] == 2:
            order = ">"
        else:
            raise ValueError("unknown ELF byte order")
        if ident[4] == 2:
            header_fmt, section_fmt = "HHIQQQIHHHHHH", "IIQQQQIIQQ"
            self._symbol_fmt, self._symbol_is64 = order + "IBBHQQ", True
        elif ident[4] == 1:
            header_fmt, section_fmt = "HHIIIIIHHHHHH", "IIIIIIIIII"
            self._symbol_fmt, self._symbol_is64 = order + "IIIBBH", False
        else:
            raise ValueError("unknown ELF class")

        header = self._unpack(order + header_fmt, handle.read(struct.calcsize(order + header_fmt)))
        shoff, shentsize, shnum, shstrndx = header[5], header[10], header[11], header[12]

        section_fmt = order + section_fmt
        self.sections: List[Tuple[int, int, int, int, int, int]] = []
        for index in range(shnum):
            handle.seek(shoff + index * shentsize)
            fields = self._unpack(section_fmt, handle.read(struct.calcsize(section_fmt)))
            name, kind, offset, size, link, entsize = (fields[0], fields[1], fields[4],
                                                      fields[5], fields[6], fields[9])
            self.sections.append((name, kind, offset, size, link, entsize))

        self.names: List[str] = []
        if self.sections and shstrndx < len(self.sections):
            strtab = self._data(shstrndx)
            self.names = [_cstring(strtab, section[0]) for section in self.sections]

    @staticmethod
    def _unpack(fmt: str, data: bytes) -> Tuple[Any, ...]:
        try:
            return struct.unpack(fmt, data)
        except struct.error as exc:
            raise ValueError(f"truncated ELF file: {exc}") from None

    def _data(self, index: int) -> bytes:
        _, kind, offset, size, _, _ = self.sections[index]
        if kind == 8:  # SHT_NOBITS
            return b""
        self._handle.seek(offset)
        return self._handle.read(size)

    def object_symbols(self) -> Iterable[str]:
        """Yield the names of data-object symbols in the symbol table."""
        for index, (_, kind, _, _, link, entsize) in enumerate(self.sections):
            if kind != _SHT_SYMTAB:
                continue
            data = self._data(index)
            strtab = self._data(link) if link < len(self.sections) else b""
            size = entsize or struct.calcsize(self._symbol_fmt)
            width = struct.calcsize(self._symbol_fmt)
            for start in range(size, len(data) - width + 1, size):
                entry = struct.unpack(self._symbol_fmt, data[start:start + width])
                info = entry[1] if self._symbol_is64 else entry[3]
                if info & 0x0F == _STT_OBJECT:
                    yield _cstring(strtab, entry[0])
            return


def _cstring(table: bytes, offset: int) -> str:
    end = table.find(b"\0", offset)
    if end == -1:
        end = len(table)
    return table[offset:end].decode("utf-8", errors="replace")


def elf_section_names(path: str) -> List[str]:
    """Return the section names of an ELF file, in header order.

    Raises OSError when the file cannot be read and ValueError when it is
    not a valid ELF file.
    """
    with open(path, "rb") as handle:
        return list(_ElfFile(handle).names)


def _inspect_binary(path: str, info: ProcessInfo, rules: TagRules) -> Dict[str, str]:
    try:
        with open(path, "rb") as handle:
            elf = _ElfFile(handle)
            if _GO_BUILD_ID in elf.names:
                changes = {"language_type": "go"}
                for symbol in elf.object_symbols():
                    tag = rules.go_tag(symbol)
                    if tag:
                        changes["add_info_type"] = tag
                        changes["process_type"] = rules.process_map.get(tag, "")
                        break
                return changes
            if _GNU_BUILD_ID in elf.names:
                return {"language_type": "c/c++"}
    except (OSError, ValueError) as exc:
        log.debug("cannot inspect %s for pid %d: %s", path, info.pid, exc)
    return {}


def classify_process(info: ProcessInfo, name: str, cmdline: Optional[Sequence[str]],
                     exe: Optional[str], rules: TagRules) -> ProcessInfo:
    """Return a copy of *info* with language, name and type worked out.

    *cmdline* and *exe* are None when they could not be read. Raises
    ValueError when the information needed for the process kind is missing.
    """
    info = dataclasses.replace(info, process_type="Unknown")

    if name == "java":
        if cmdline is None:
            raise ValueError("command line unavailable")
        java_name, process_type, add_info = parse_java_cmdline(cmdline, rules)
        return dataclasses.replace(info, process_name=java_name, process_type=process_type,
                                   add_info_type=add_info, language_type="java")

    if "python" in name:
        if cmdline is None:
            raise ValueError("command line unavailable")
        if len(cmdline) < 2:
            raise ValueError("Python Name error")
        return dataclasses.replace(info, process_name=cmdline[1].split("/")[-1],
                                   language_type="python")

    exe_text = exe or ""
    if "python" in exe_text:
        return dataclasses.replace(info, language_type="python")
    if "bash" in exe_text and name != "bash":
        return dataclasses.replace(info, language_type="bash script")

    if exe_text.split("/")[-1] == name:
        if exe is None:
            raise ValueError("executable path unavailable")
        path = os.path.join(f"/proc/{info.pid}/root", exe.lstrip("/"))
        changes = _inspect_binary(path, info, rules)
        if changes:
            return dataclasses.replace(info, **changes)
    return info


def _read_process(proc: psutil.Process) -> Tuple[Optional[List[str]], Optional[str]]:
    try:
        cmdline: Optional[List[str]] = proc.cmdline()
    except (psutil.Error, OSError):
        cmdline = None
    try:
        exe: Optional[str] = proc.exe()
    except (psutil.Error, OSError):
        exe = None
    return cmdline, exe


def _filter_reason(rules: TagRules, tag_name: str) -> Optional[str]:
    if rules.is_allowed(tag_name):
        return None
    white_ok = rules.process_all or (rules.white_list is not None
                                     and rules.white_list.search(tag_name) is not None
                                     and rules.white_list.search(tag_name).group(0) != "")
    if white_ok:
        return f"Check Black List : {tag_name}"
    return f"Check White List : {tag_name}"


class ProcessScanner:
    """Looks up processes, tags them by the rules and caches the result by pid."""

    def __init__(self, rules: Optional[TagRules] = None, proc_dir: Optional[str] = None,
                 host_name: Optional[str] = None) -> None:
        self.rules = rules if rules is not None else TagRules()
        self.proc_dir = proc_dir
        if host_name is None:
            try:
                host_name = socket.gethostname()
            except OSError:
                host_name = UNKNOWN
        self.host_name = host_name or UNKNOWN
        self._cache: Dict[int, ProcessInfo] = {}
        self._lock = threading.Lock()

    def _classify(self, info: ProcessInfo, name: str, proc: psutil.Process) -> ProcessInfo:
        cmdline, exe = _read_process(proc)
        try:
            return classify_process(info, name, cmdline, exe, self.rules)
        except ValueError as exc:
            log.debug("classify pid %d failed: %s", info.pid, exc)
            return dataclasses.replace(info, process_type=UNKNOWN, app_name=UNKNOWN)

    def scan(self, pid: int, host_tag: str, ip: str, port: str, k8s: bool,
             resources: Any = None) -> ProcessInfo:
        """Describe the process *pid*.

        Returns a temporary placeholder when the process is gone, and raises
        ValueError when the white or black list filters the process out.
        *resources* answers ``get_pod(id)`` and ``get_container(id)`` with
        objects carrying ``resource_name`` and ``namespace``, or None.
        """
        try:
            proc = psutil.Process(pid)
            name = proc.name()
        except (psutil.Error, ValueError, OSError):
            return temporary_process(self.rules, host_tag, k8s)

        with self._lock:
            cached = self._cache.get(pid)
            if cached is not None and cached.process_name == name:
                return cached

        info = ProcessInfo(pid=pid, process_name=name)

        if k8s:
            try:
                pod_id, container_id = search_k8s_uid(pid, self.proc_dir)
            except OSError:
                pod_id, container_id = "", ""
            info.pod_id, info.container_id = pod_id, container_id
            pod = resources.get_pod(pod_id) if resources is not None else None
            if pod is not None:
                info.pod_name = pod.resource_name
                info.namespace = pod.namespace
                host_tag = f"{info.pod_name}[{info.namespace}][pod]"
            else:
                host_tag = f"{host_tag}[default][node]"
            container = resources.get_container(container_id) if resources is not None else None
            if container is not None:
                info.container_name = container.resource_name

        info.host_name = host_tag
        info = self._classify(info, name, proc)

        info.process_tag_name = self.rules.tag_name(info.process_name)
        info.process_type = self.rules.process_type(info.process_tag_name)

        reason = _filter_reason(self.rules, info.process_tag_name)
        if reason is not None:
            raise ValueError(reason)

        info.app_name = (self.rules.find_app_name(info.process_tag_name, info.process_type,
                                                  host_tag, ip, port)
                         or self.rules.default_app_name(info.process_type, host_tag))

        with self._lock:
            self._cache[pid] = info
        return info

    def scan_all(self) -> List[str]:
        """Describe every admitted process as ``tag&type&app&pid``, sorted."""
        entries = set()
        for proc in psutil.process_iter():
            try:
                name = proc.name()
            except (psutil.Error, OSError):
                continue
            info = self._classify(ProcessInfo(pid=proc.pid, process_name=name), name, proc)
            tag_name = self.rules.tag_name(info.process_name)
            process_type = self.rules.process_type(tag_name)
            if not self.rules.is_allowed(tag_name):
                continue
            app_name = (self.rules.find_app_name(tag_name, process_type, self.host_name, "", "")
                        or self.rules.default_app_name(process_type, self.host_name))
            entries.add(f"{tag_name}&{process_type}&{app_name}&{proc.pid}")
        return sorted(entries)