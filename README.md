# slipgate

Building blocks for running a tunnel server on a Linux host:

- **`slipgate.socks5`**: a SOCKS5 proxy (CONNECT only) with optional
  username/password authentication. `Socks5Server.set_credentials` swaps the
  credentials while the server runs, and open connections stay up.
- **`slipgate.stuntls`**: a TLS listener that forwards to an SSH backend. It
  detects the client protocol from the first four bytes: WebSocket upgrade
  (`GET `), HTTP `CONNECT`, raw SSH (`SSH-`), or a payload prefix. A payload
  prefix is skipped until the SSH banner appears, for at most 8192 bytes.
- **`slipgate.service`**: writes, starts, stops, reloads and inspects systemd
  units named `slipgate-<tag>`.
- **`slipgate.firewall`**: opens and closes ports through ufw, firewalld or
  iptables, whichever is active. iptables rules are saved and restored at
  boot by a oneshot unit. The module also disables the systemd-resolved stub
  listener so port 53 is free (`disable_resolved_stub`), and kills processes
  that hold a port (`free_port`).
- **`slipgate.prompt`** and **`slipgate.readline`**: interactive terminal
  prompts. The line editor (`LineEditor`, `read_line`) handles arrow keys,
  Home/End, Delete, Backspace and Ctrl-A/E/U/K. Ctrl-C, or Ctrl-D on an
  empty line, raises `Interrupted`. `flush_stdin` discards pending input.
- **`slipgate.version`**: formats the version banner (`version_string`, `is_dev`).

The package needs Python 3.10 or newer and uses only the standard library.
The service and firewall helpers call `systemctl`, `journalctl`, `ufw`,
`firewall-cmd`, `iptables` and related tools. They must run as root on a
systemd-based Linux system.

## Running a SOCKS5 proxy

```python
from slipgate.socks5 import serve_multi

# Blocks until SIGINT/SIGTERM. An empty mapping disables authentication.
serve_multi("127.0.0.1", 1080, {"alice": "password"})
```

To control the server from code, create a `Socks5Server` yourself. Run
`serve_forever()` in one thread and call `shutdown()` from another.

## Running the TLS/WebSocket SSH front end

```python
from slipgate.stuntls import serve_stuntls

serve_stuntls("0.0.0.0", 443, "127.0.0.1:22", "/etc/slipgate/cert.pem", "/etc/slipgate/key.pem")
```

`serve_stuntls` blocks. To stop the front end, call `StunTLSServer.shutdown()`
from another thread. The WebSocket helpers can also be used on their own:

```python
from slipgate.stuntls import compute_accept_key, encode_ws_frame

compute_accept_key("dGhlIHNhbXBsZSBub25jZQ==")   # 's3pPLMBiTxaQ9kYGzzhZRbK+xOo='
encode_ws_frame(0x2, b"hi")                      # b'\x82\x02hi'
```

## Managing services

```python
from slipgate import service

unit = service.Unit(
    name=service.tunnel_service_name("mytunnel"),   # 'slipgate-mytunnel'
    description="My tunnel",
    exec_start="/usr/local/bin/mytunnel",
    user="root",
    after="network.target",
    restart="always",
)
service.create(unit)
service.start(unit.name)
service.status(unit.name)          # e.g. 'active'
print(service.logs(unit.name, "50"))
service.list_slipgate_services()
```

Failures of `systemctl` or `journalctl` raise `service.ServiceError`.

## Firewall and resolver helpers

```python
from slipgate import firewall

firewall.allow_port(53, "udp")
firewall.resolver_points_at_stub("nameserver 127.0.0.53\n")   # True
```

Failures raise `firewall.FirewallError`.

## Prompts

```python
from slipgate.prompt import SelectOption, ask_string, confirm_yes, select

tag = ask_string("Tag (unique name)", "")
kind = select("Backend", [SelectOption("SSH", "ssh"), SelectOption("SOCKS", "socks")])
if confirm_yes("Start the tunnel now?"):
    ...
```

`collect_inputs` asks in turn for each `InputSpec` that does not have a value yet.
An invalid choice, or an empty answer to a required input, raises `PromptError`.
Set `SLIPGATE_SIMPLE_PROMPT=1` to turn off line editing and read plain lines
from standard input.

## What the package does not do

There is no command-line program and no interactive menu. The package does
not store a tunnel configuration, install or download tunnel server
binaries, or run a DNS router. It also does not create system users or manage
WARP routing. It provides the proxies and helpers above as a library, and
callers combine them.

## Tests

Install the `test` extra and run pytest from the project directory.