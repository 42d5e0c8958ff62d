"""
Edge cluster simulator package.

Modules:
- state: nodes, devices, configs, traces, sensor readings and index entries
- node: simulated cluster node (heartbeats, liveness, load, recovery)
- registry: cluster membership, status and optimal device selection
- policy: device load balancing strategies
- failures: per-node failure counting and recovery state machine
- telemetry: sensor and simulation telemetry generators
- dataset_index / storage: persisted sensor datasets and their indexes
- manager: wiring of all of the above
- api: REST API surface
"""
