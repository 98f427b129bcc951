# scutdrcom

A command-line client for campus networks that use 802.1X (EAPOL) wired
authentication followed by Dr.com UDP keep-alive heartbeats.

One authentication round goes like this:

1. Send EAPOL Logoff twice to clear any stale session.
2. Send EAPOL Start. The first one goes to the multicast address. If nothing
   answers, the client switches between broadcast and multicast and tries
   again, up to three more times.
3. Answer the switch's Identity and MD5-Challenge requests.
4. Once the switch reports success, run the online hook and keep the session
   alive with the Dr.com UDP exchange on port 61440 (MISC_START_ALIVE,
   MISC_INFO, the heart-beat packets and a periodic alive heartbeat).

The client authenticates again in three cases: the switch reports a failure
while retries remain, a heartbeat goes unanswered, or a heartbeat cannot be
sent. If no switch answers at all, it waits 1, 2, 4, … seconds between
attempts.

## Requirements

- Linux. The client uses raw `AF_PACKET` sockets, `SO_BINDTODEVICE` and
  interface ioctls.
- Python 3.10 or newer.
- Root privileges, or `CAP_NET_RAW` and `CAP_NET_ADMIN`.

## Installation

```
pip install .
```

## Usage

```
scutdrcom --username <username> --password <password> [options...]
```

| Option | Meaning |
| --- | --- |
| `-u, --username <username>` | Account name (required unless `--logoff`) |
| `-p, --password <password>` | Account password (required unless `--logoff`) |
| `-i, --iface <ifname>` | Interface to authenticate on (default `eth0`) |
| `-n, --dns <dns>` | DNS server address reported to the UDP server (default `222.201.130.30`) |
| `-H, --hostname <hostname>` | Host name reported to the UDP server (default: this machine's, cut to 32 characters) |
| `-s, --udp-server <server>` | Dr.com UDP server address (default `202.38.210.131`) |
| `-c, --cli-version <hex>` | Client version bytes, as a hex string (at most 64 bytes) |
| `-T, --net-time <H:M>` | Time of day from which internet access is allowed, e.g. `6:10` |
| `-h, --hash <hash>` | Client DLL hash value |
| `-E, --online-hook <command>` | Shell command run after EAP authentication succeeds |
| `-Q, --offline-hook <command>` | Shell command run before sleeping until `--net-time` |
| `-D, --debug [level]` | Log level 0–4 (none, error, info, debug, trace). `-D` alone means debug |
| `-o, --logoff` | Send EAPOL Logoff and exit |

Example:

```
sudo scutdrcom -u student -p password -i eth1 -E "ifup wan"
```

To log off:

```
sudo scutdrcom --logoff -i eth1
```

The switch may refuse access because of the time of day ("Authentication
Fail ErrCode=16"). If `--net-time` is given and that time is still ahead
today, the client runs the offline hook, sleeps until then, and authenticates
again. Otherwise it exits.

When the client receives SIGINT or SIGTERM, it logs `Exiting...` and stops.
If a session was under way, it sends a Logoff as it leaves.

Exit status:

| Status | Meaning |
| --- | --- |
| 0 | Normal end |
| 1 | The raw or UDP socket could not be set up, or the switch kept failing the login |
| 255 | Invalid or missing command-line options |

## Logging

Messages go to standard output and are appended to `/tmp/scutclient.log`.
Once that file grows past 100 KB, it is moved to
`/tmp/scutclient.log.backup.log` and a new one is started. At debug level,
each packet's length is logged. At trace level, every packet sent and
received is also written as a hex dump.

## Library use

The packet builders are plain functions over `bytes` and need no network
access:

```python
from scutdrcom.auth import eth_header
from scutdrcom.drcom import start_packet, parse_eap_error

header = eth_header(bytes.fromhex("0180c2000003"), bytes.fromhex("020000000001"))
frame = start_packet(header)        # 96-byte EAPOL Start frame

failure = parse_eap_error("userid error1")
failure.reason                      # "Account does not exist."
parse_eap_error("hello")            # None: not a failure notification
```

Other pieces:

- `scutdrcom.drcom.DrcomSession` builds the stateful packets: the MD5
  response, MISC_INFO, the heart-beat packets and the alive heartbeat.
- `scutdrcom.info.Settings` holds the client's settings.
  `hex_to_bytes` decodes version strings.
- `scutdrcom.tracelog.TraceLog` is the levelled log with rotation.
  `hexdump_lines` formats packet dumps.
- `scutdrcom.auth.Authenticator` runs a whole session over real sockets.
  `handle_eap` and `handle_udp` react to single packets.

## What it does not do

- There is no configuration file, init script or service wrapper. All
  settings come from the command line.
- It runs only on Linux over IPv4.