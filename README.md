# openagent

`openagent` is a library of building blocks for a host-side network monitoring
agent. It works out who owns a network flow on this host, how the owning process
should be named and tagged, and keeps the agent's own log files.

## Modules

- **`openagent.netstats`**: reads the host's TCP and UDP sockets into a
  `ConnectionTable` (through psutil, or `netstat -ano` on Windows). The table
  answers which pid owns a flow, with fallback to the wildcard addresses
  `0.0.0.0` and `::`. It also says whether a port is listening and whether an
  address is local. `Netstats` holds the current table and replaces it on
  `reload()`. `service_port_scan(k8s)` collects the ports in use on the host,
  inside running docker containers (through the `docker` command), and, when
  `k8s` is true, under every process in the `HOST_PROC` directory. The parsers
  `parse_proc_net_tcp`, `parse_proc_net_udp`, `parse_windows_netstat` and
  `convert_addr` work on text you pass them.
- **`openagent.tagrules`**: `TagConfig` is the tag rule document. It reads and
  writes YAML and the mapping form exchanged with a server, and has an
  order-independent `digest()`. `TagRules` applies a config. It picks the tag
  name out of a process name, maps it to a process type, filters it through the
  white and black lists, and chooses the application name. `TagRuleFile` notices
  when the rule file on disk has changed, moves a pending `.server` copy into
  place, and writes a received config beside the file.
- **`openagent.process`**: `ProcessScanner.scan()` describes one pid as a
  `ProcessInfo`. It detects Java, Python, bash, Go and C/C++ processes, the last
  two by reading the ELF sections. On Kubernetes it reads the pod and container
  ids from the cgroup file. It applies the tag rules and caches results by pid.
  `scan_all()` lists every admitted process as `tag&type&app&pid`. The helpers
  `classify_process`, `parse_java_cmdline`, `parse_cgroup_line`,
  `search_k8s_uid`, `elf_section_names` and `temporary_process` can be used on
  their own.
- **`openagent.hashutil`**: `struct_hash` (hex MD5 of a value's `repr`),
  `byte_hash` (64-bit FNV-1a) and `file_hash` (hex MD5 of a file).
- **`openagent.netio`**: `NetReader` reads exact-length big-endian values from
  a socket, and `NetWriter` sends whole buffers with a per-send timeout. The
  `new_*_array` helpers refuse allocations above 20 MiB, or above 10240 entries
  for string lists, with `ValueError`.
- **`openagent.env`**: `Env` holds the agent's runtime state: host name, public
  IP, project code and free-form options. `Env.trace_options()` returns the
  trace-route settings from its config mapping as `TraceOptions`.
- **`openagent.logutil`**: `AgentLogger` writes to
  `<home>/logs/<log_id>-<oname>[-YYYYMMDD].log` and optionally to the console.
  It drops repeats of a log id within the interval and switches files on a new
  day. It deletes dated files older than `keep_days`, and `read()` returns a log
  back in slices as `LogData`. `FileLog` is a plain append-only log with
  millisecond timestamps.

## Examples

```python
from openagent.hashutil import byte_hash, file_hash, struct_hash

byte_hash(b"hello")          # 64-bit FNV-1a as an int
file_hash("tagrule.yaml")    # hex MD5 of the file contents
struct_hash({"a": 1})        # hex MD5 of the value's repr
```

```python
from openagent.netstats import convert_addr, parse_proc_net_tcp, parse_proc_net_udp

with open("/proc/net/tcp") as fh:
    listening, established = parse_proc_net_tcp(fh)

with open("/proc/net/udp") as fh:
    udp_ports = parse_proc_net_udp(fh)

convert_addr("[fe80::1%eth0]:8080")   # ("fe80::1", 8080)
```

```python
from openagent.netstats import Netstats

stats = Netstats()
pid = stats.search_process("10.0.0.5", "10.0.0.9", 8080, 51514, "TCP")  # -1 if unknown
stats.direction(8080)        # "IN" if 8080 is a listening port, else "OUT"
```

```python
from openagent.tagrules import TagConfig, TagRules

with open("tagrule.yaml") as fh:
    config = TagConfig.from_yaml(fh.read())
rules = TagRules()
rules.apply(config)
rules.find_app_name("nginx", "web", "web-01", "", "")   # "shop" with the file below
```

## Tag rule file format

```yaml
processRegEx: ["nginx", "redis-server"]
processWhiteList: []
processBlackList: ["sshd"]
processType:
  web: ["nginx", "httpd"]
appName:
  shop:
    - process_type: web
      host_tag: web-01
appNameDefault: host_tag
untagOption: {}
```

Entries under `appName` may also give `process_tag`, `ip` and `port`. An
empty field matches anything. `appNameDefault` can be `process_type`,
`host_tag` (also used when it is empty) or any fixed string.

## What it does not do

This is a library only. It has no command and no long-running agent process.
It does not capture packets and does not connect to a collector.
`TagRuleFile` reports changed rules through a `send` callable you supply, and
the caller delivers them. It does not watch Kubernetes either: `ProcessScanner.scan()`
takes a `resources` object you provide to look up pod and container names.
`logutil.DOTNET_APP_TYPES` is empty, so `log_home()` uses `WHATAP_HOME` (or
`.`) unless you fill it in.

## Testing

Install the `test` extra and run `pytest` from the project directory.