# blixt

Layer 4 (TCP and UDP) load balancing for Kubernetes, driven by the Gateway API.

The package holds:

- **Control plane** – reconciles `Gateway` objects whose `GatewayClass` names
  the controller `gateway.networking.k8s.io/blixt`: it validates their
  listeners, creates or corrects a `LoadBalancer` Service (and a matching
  `Endpoints` object) for each one, and keeps the Gateway's listener statuses,
  conditions and addresses up to date.
- **Data plane API server** – a gRPC service (`backends.backends`) that keeps
  the table of virtual IPs and their backend targets, with a separate
  plain-text health check port and optional TLS or mutual TLS.
- **Developer tasks** – helpers that drive `cargo` to build and start the
  native binaries, and a client for the API server.
- **UDP test server** – a small server used by integration tests.

## Commands

### Control plane

```
blixt-controller
```

Connects to the cluster with the in-cluster service account
(`KUBERNETES_SERVICE_HOST`, `KUBERNETES_SERVICE_PORT` and the token and CA
under `/var/run/secrets/kubernetes.io/serviceaccount`) and reconciles Gateways
until SIGINT or SIGTERM. Gateways are listed every 2 seconds; a Gateway is
reconciled when its generation, labels or annotations change, again 60
seconds after a clean reconcile, and 5 seconds after a failed one. If the
client cannot be configured, or the Gateway API CRDs cannot be listed, the
command logs the error and exits with status 1.

### Developer tasks

```
blixt-xtask build-ebpf --target bpfel-unknown-none --release
blixt-xtask run-dataplane --release -- --iface eth0
blixt-xtask run-controlplane
blixt-xtask grpc-client --vip-ip 10.0.0.1 --vip-port 8080 --daddr 10.0.0.2 --dport 8080 --ifindex 2
blixt-xtask grpc-client --vip-ip 10.0.0.1 --vip-port 8080 --delete
```

- `build-ebpf` runs `cargo +nightly build` in `dataplane/ebpf` for the given
  target (`bpfel-unknown-none` or `bpfeb-unknown-none`).
- `run-dataplane` builds the eBPF programs and the `loader` package, then
  replaces itself with `target/<profile>/loader`, wrapped in `--runner`
  (default `sudo -E`) and given the arguments after `--`.
- `run-controlplane` builds the `controlplane` package and replaces itself
  with `target/<profile>/controller`.
- `grpc-client` sends an `Update` (or, with `--delete`, a `Delete`) to the API
  server at `--server-ip`/`--server-port` (default `127.0.0.1:9874`) and prints
  the server's confirmation.

On failure the command prints the error chain and exits with status 1.

### UDP test server

```
blixt-udp-test-server
blixt-udp-test-server --dry-run
```

Listens for UDP datagrams on ports 9875, 9876 and 9877 and prints what
arrives; the TCP health check port 9878 starts accepting once all three are
listening, and prints each new peer address. With `--dry-run` no UDP
listeners are started, so the health port never starts accepting.

## Library use

### Talking to the data plane API

```python
import grpc

from blixt.backends import BackendsStub, Target, Targets, Vip

with grpc.insecure_channel("127.0.0.1:9874") as channel:
    stub = BackendsStub(channel)
    vip = Vip(ip=0x0A000001, port=8080)  # 10.0.0.1:8080
    reply = stub.update(
        Targets(vip=vip, targets=[Target(daddr=0x0A000002, dport=8080, ifindex=2)])
    )
    print(reply.confirmation)
```

`blixt.grpc_client.update` does the same from keyword arguments and returns
the confirmation text.

Messages are dataclasses with `encode()` and `decode(data)` for the protobuf
wire format; malformed input raises `DecodeError`.

### Serving the API

`blixt.server.BackendService` implements the service over three mappings:
backends per gateway (`BackendKey` to `BackendList`), the round-robin index
per gateway, and tracked connections (`ClientKey` to `LoadBalancerMapping`),
all from `blixt.common`. A gateway holds at most 128 backends; a larger
`Update` is refused with `RESOURCE_EXHAUSTED`. A target without an interface
index has it looked up with `blixt.netutils.if_index_for_routing_ip`, a
Linux netlink route query. Deleting a VIP also drops the connections it
served; deleting a VIP that does not exist still succeeds.

`blixt.apiserver.setup_tls` loads the files named by a `ServerOnlyTLSConfig`
or `MutualTLSConfig` (from `blixt.config`), returning `None` when no TLS is
configured and raising `TLSSetupError` when a certificate, key or client CA
file is missing or is not valid PEM. `blixt.apiserver.start` serves a
`BackendService` on the given port and a gRPC health check on the next port
up, and returns a handle with `wait_for_termination()` and `stop()`.
`blixt.config.add_tls_subcommands` and `tls_config_from_args` give an
`argparse` parser the `tls` and `mutual-tls` subcommands.

### Gateway status helpers

`blixt.gateway_status` works on Gateway objects as plain dictionaries:
`set_listener_status`, `get_accepted_condition`, `set_condition` and
`set_gateway_status_addresses` compute the statuses the controller writes,
and `check_route_kinds` explains why a listener's allowed route kinds are
rejected. `blixt.gateway_service.update_service_for_gateway` reports whether
a Service had to change to match its Gateway.

Only listeners with protocol `TCP`, `HTTP`, `HTTPS` (served as TCP routes)
and `UDP` are supported, and only addresses of type `IPAddress`.

## What this package does not do

It contains no packet-processing program and does not load or attach one to
a network interface. `blixt.apiserver.start` has no command of its own here,
and the tables it serves are the Python mappings it is given, held in
memory. The `build-ebpf`, `run-dataplane` and `run-controlplane` tasks need
`cargo` and the native sources in the current directory; they are not part of
this package. The controller only reads in-cluster configuration, not a
kubeconfig file.

## Testing

Install the package with its `test` extra and run pytest from the project
directory.