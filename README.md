# lineinbridge

`lineinbridge` turns a machine with a line-in audio input into a network audio
source. It finds an audio server on the local network through mDNS
(`_loxaudio._tcp.local.`), registers with it, and streams the captured audio
to the input the server assigns.

## Installation

```
pip install .
```

This installs two commands that do the same thing: `lox-linein-bridge` and
`lineinbridge`.

## Usage

Run the bridge in the foreground (`run` is also the default when no command is
given):

```
lox-linein-bridge run
```

With logging switched on (levels: `off`, `error`, `warn`, `warning`, `info`,
`debug`, `trace`; the default is `off`):

```
lox-linein-bridge --log-level info run
lox-linein-bridge --log-level=debug run
```

Install it as a systemd service. This needs root. It makes sure a config file
exists, writes `/etc/systemd/system/lox-linein-bridge.service`, then runs
`systemctl daemon-reload`, `systemctl enable --now lox-linein-bridge` and
`systemctl restart lox-linein-bridge`:

```
lox-linein-bridge install
```

The unit starts `/usr/local/bin/lox-linein-bridge`, so the package must be
installed where that command ends up in that place.

Other options:

```
lox-linein-bridge --help
lox-linein-bridge --version
```

An unknown command prints the usage and exits with status 1. Errors are
printed as `Error: ...` with status 1; Ctrl-C exits with status 130.

## What it does

- **Discovery.** It browses for `_loxaudio._tcp` services for eight seconds.
  If several servers answer, it picks the one whose `mac` TXT entry matches
  `preferred_server_mac`, then the one whose `name` entry matches
  `preferred_server_name`, and otherwise the first. The API paths come from
  the `api`, `linein_register` and `linein_status` TXT entries, defaulting to
  `/api/linein/bridges/register` and `/api/linein/bridges/{bridge_id}/status`.
  Failed discovery is retried every five seconds.
- **Registration.** It posts its bridge id, hostname, version, first
  non-loopback IPv4 address, MAC address and the capture devices it can see.
- **Status reports.** Every five seconds it posts its state (`IDLE`,
  `RECONNECTING`, `STREAMING` or `ERROR`), capture format, measured input rate,
  signal level and last error. The device list is sent only when it changed,
  and a track change is reported once. Each reply can change the assigned
  input, the ingest endpoint, the capture device, the VAD threshold and hold
  time, the target sample rate and the resampler. A change to anything but the
  VAD settings restarts capture and streaming. After three failed posts in a
  row it runs discovery again.
- **Capture.** It opens the assigned device for stereo float input at the
  target rate, accepting whatever format the device gives (32-bit float,
  signed or unsigned 16-bit). It measures the real input rate every two
  seconds and resamples when it differs from the target. Resampler names:
  `linear`/`basic`, `sinc-fast`/`fast`/`medium`, and
  `sinc`/`rubato`/`quality`/`hq`; unknown names select `sinc`. Capture
  failures are retried with a delay that doubles from one to thirty seconds.
- **Streaming.** It sends 16-bit little-endian stereo PCM in 40 ms chunks,
  over WebSocket (binary frames) or raw TCP. A TCP connection starts with the
  assigned input id on its own line. At most two seconds of audio is buffered;
  short chunks are padded with silence. Lost connections are retried with the
  same backoff.
- **Voice-activity gate.** Audio is sent only while the level is at or above
  the threshold (default -45 dBFS), and for the hold time after it (default
  2000 ms). Silence of two seconds or more before audio returns is reported as
  a track change. Defaults for the target rate and resampler are 48000 Hz and
  `sinc`.
- **Health file.** Every five seconds it writes a JSON snapshot (`ts`,
  `state`, `device`, `ingest`, `last_error`, `bytes_sent_total`,
  `last_chunk_ts`) to `/tmp/lox-linein-bridge.status.json`, or to the path in
  `LOX_LINEIN_BRIDGE_HEALTH_PATH`.

## Configuration

On first start the bridge creates a config file with a fresh `bridge_id`. It
writes `/etc/lox-linein-bridge/config.toml` when it can, and otherwise
`$HOME/.config/lox-linein-bridge/config.toml`:

```toml
bridge_id = "0b5e3c1a-0000-4000-8000-000000000000"
preferred_server_name = "living-room"
preferred_server_mac = "02:00:00:00:00:01"
```

Both `preferred_server_*` keys are optional. A config file that cannot be
read or parsed is renamed with an `.invalid.<timestamp>` suffix and a new one
is created.

## Library modules

- `lineinbridge.resample`: `ResamplerMode`, `LinearResampler`,
  `SincResampler`, `Resampler`, and sample conversion helpers
  (`f32_to_i16`, `convert_direct_to_i16`, `interleave_to_i16`,
  `samples_to_bytes`).
- `lineinbridge.stream`: `StreamPacer`, `VadGate`, `rms_db_from_pcm_i16_le`,
  chunk sizing helpers and `stream_audio` with `TcpTarget` / `WsTarget`.
- `lineinbridge.runtime`: `RuntimeConfig` and `StreamKey`, which turn server
  replies into streaming settings.
- `lineinbridge.discovery`, `lineinbridge.server_api`, `lineinbridge.capture`,
  `lineinbridge.config`, `lineinbridge.health`, `lineinbridge.status`,
  `lineinbridge.install` and `lineinbridge.cli` cover the parts described
  above.

## Limitations

- mDNS browsing uses IPv4 only.
- Device listing reports each input device with the channel count and the one
  sample rate it opens at when asked for 48000 Hz, not every rate it supports.
- The bridge is only a client: it does not include the audio server or any
  ingest endpoint.