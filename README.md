# msgstm

A software transactional memory built on message passing. Nodes take one of
two roles:

- **service nodes** (`msgstm.dsl.DslService`) each own part of the address
  space. They keep a lock table of readers and writers
  (`msgstm.locktable.LockTable`, on top of `msgstm.ssht.SimpleHashTable`) and
  can settle conflicts with a timestamp-based contention manager
  (`msgstm.contention.ContentionManager`). At the end they gather the
  statistics every application node reports (`msgstm.dsl.DslStats`);
- **application nodes** (`msgstm.app.AppNode`) run transactions. Each load or
  store first asks the service node in charge of that address for a lock and
  gets back a `msgstm.protocol.Conflict`.

Roles are given to node ids by `msgstm.topology.Topology` (every second node
is a service node by default; a fixed table or a bitmap can be used instead).

Addresses come from one of two places. `msgstm.fakemem.FakeMemory` is a
first-fit allocator over a pretend address space. `msgstm.pgas` holds
partitioned memory: `PgasAppAllocator` hands out addresses in the partition
of an application node's service node, and `PgasStore` holds the values on
the service nodes. Writes are buffered in `msgstm.writeset.WriteSet` or
`PgasWriteSet` until commit.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Running

`msgstm.system.Runtime` starts every node on its own thread and connects them
with in-process queues. The `msgstm` command runs a short demonstration
workload: each application node runs transactions that read one address and
write another, retrying after aborts. Give the total number of nodes with
`-total=N`:

```
msgstm -total=4
```

Without `-total=` (or with fewer than one argument) it prints a usage message
and exits with status 1. When all application nodes have sent their
statistics, every service node prints its lock-table usage, and the lowest
service node also prints the global statistics: starts, commits, aborts by
conflict kind, per-second rates, commit rate and latency.

## Using it from Python

```python
from msgstm.protocol import Conflict
from msgstm.system import Runtime


def app_main(node):
    if node.store(0x40) is Conflict.NO_CONFLICT:
        node.release_all(Conflict.NO_CONFLICT)
        node.tx.tx_committed += 1
    return node.tx.tx_committed


results = Runtime(4).run(app_main)
```

`run` returns a dict by node id: what `app_main` returned for application
nodes and the final report for service nodes. `Runtime` takes the contention
policy (`"wholly"`, `"faircm"`, `"greedy"`, `"greedy_global"`, or `None` for
no contention manager) and, with `pgas_size`, gives every service node a
partition of that many bytes so that values travel with the requests
(`store_inc`, `notx_load`, `notx_store`).

`load` and `store` return the conflict code; `AppNode.store_all` locks every
address of a write set and raises `msgstm.app.TxAborted` with the reason on
the first conflict. `AppNode.handle_abort` releases all locks and waits before
a retry. `msgstm.protocol.conflict_reason` gives the name of a conflict code.

`msgstm.profiler.Profiler` records tick counts in numbered slots and renders
a per-slot breakdown: share of the total, samples, time split into seconds,
milliseconds, microseconds and nanoseconds, and the average.

## What it does not do

All nodes run as threads of one Python process and exchange messages through
queues; there is no communication between processes or machines, no pinning
to cores, and no real shared memory. With `FakeMemory` the addresses are only
numbers: values written outside partitioned mode are not stored anywhere.
The package ships only the small demonstration workload above, not a set of
benchmarks.