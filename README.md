# tierstore

`tierstore` keeps files on a ladder of storage tiers, from a fast hot tier down
to slower and cheaper ones, and moves them between tiers according to placement
rules. It is a service layer: the code that a mount, a daemon or an admin front
end calls to decide where a file is written and read, when it is copied, and
when it is evicted. It has no third-party dependencies.

All durations are given in seconds and all sizes in bytes.

## Building blocks (`tierstore.model`)

- Data types: `File`, `FileTier`, `FileInfo`, `FileState` (`LOCAL`, `SYNCED`,
  `WRITING`), `Rule`, `EvictStep` (`after=None` means never) and
  `PromoteOnRead`.
- `Policy(rules)` holds ordered rules; `match(rel_path)` returns the first rule
  whose glob matches (`*`, `?`, `**`, `[...]`, `{a,b}`) and raises
  `NoRuleMatchError` when none does.
- `Backend` and `MetadataStore` are abstract interfaces you implement. A
  backend may additionally offer `rename(old_path, new_path)` and `is_final()`;
  `is_final(backend)` reports the latter.
- `DigestHasher`, `compute_digest(stream)` and `compute_file_digest(path)`
  produce a 128-bit BLAKE2b hex digest of file content.
- Errors derive from `TierFSError`: `NotExistError`, `TierNotFoundError`,
  `BackendFailureError`, `DigestMismatchError`, `NoRuleMatchError`.

## Services

- **`WriteGuard`** (`tierstore.write_guard`) tracks open write handles per
  path and a quiescence window after the last close.
  `is_write_active(path)` returns `(True, "open write handle")`,
  `(True, "quiescence window")` or `(False, "")`; `snapshot()` returns a
  `WriteGuardEntry` for each path that is open or closed within twice the
  window; `forget(path)` drops a path.
- **`Replicator`** (`tierstore.replicator`) runs `ReplicatorConfig.workers`
  threads over a queue of at most 4096 `CopyJob`s; when the queue is full a job
  is dropped with a warning. Each job is checked against the write guard and
  the destination's health (both put the job back without using a retry),
  abandoned if the source's size or modification time no longer match the
  metadata, copied, verified (`verify` of `"none"`, `"size"` or `"digest"`;
  a bad copy is deleted from the destination), then the destination tier is
  marked verified and the file set to `SYNCED`. Failed jobs are retried up to
  `max_retries` times. `metrics()` returns `(copied, failed, queue_depth)` and
  `pending_jobs()` the jobs in flight.
- **`TokenBucket`** and **`ThrottledReader`** (`tierstore.throttle`) enforce a
  shared bytes-per-second limit (burst capped at 1 MiB); the replicator uses
  them when `bandwidth_limit` is set.
- **`BackendHealth`** (`tierstore.health`) probes each tier by a `stat` of a
  sentinel path; a success or `NotExistError` within the timeout counts as
  healthy. Unknown tiers are reported healthy. `set_status_listener` receives
  every probe result.
- **`Evictor`** (`tierstore.evictor`) on each `tick()` walks the eviction
  candidates of every tier, finds the furthest schedule step a file is old
  enough for, queues a copy if the target copy is not yet verified, and
  otherwise deletes the file from its current tier and moves its record to the
  target (or purges the record when the target backend is final). It then
  checks capacity: over `capacity_threshold`, the oldest synced files are
  evicted until usage falls to `capacity_headroom`. Pinned files are never
  evicted. `next_tier_from_schedule(rule, tier)` gives the next tier ignoring
  age.
- **`Stager`** (`tierstore.stager`) keeps local copies of remote files under a
  collision-free name, with a JSON `StageMeta` sidecar; `is_stale` compares it
  to authoritative values and `sweep_staging_dir(ttl)` removes old copies.
- **`TierService`** (`tierstore.tier_service`) ties these together. It is the
  `TierLookup` and `TierCapacity` for the replicator and evictor, and offers
  `write_target`, `read_target` (queuing promotion on read when the rule asks),
  `promote_to_hot` (concurrent calls for one path share one copy; the cold copy
  stays), `on_write_complete`, `on_delete`, `on_rename` (renamed tiers are put
  back if any tier fails, and metadata is only changed on success) and
  `requeue_pending`. `start()` launches replication, eviction, health probes
  and a periodic sweep; `stop()` ends them.

## Running a tier service

```python
from tierstore.model import EvictStep, Policy, Rule
from tierstore.tier_service import (
    BackendSpec, ReplicationSettings, TierService, TierServiceConfig, TierSpec,
)

ssd = BackendSpec(name="ssd", uri="file:///srv/tier0")
nas = BackendSpec(name="nas", uri="file:///srv/tier1")
config = TierServiceConfig(
    tiers=[
        TierSpec(name="tier0", backend=ssd, priority=0, capacity=10 * 2**30),
        TierSpec(name="tier1", backend=nas, priority=1),  # capacity None: unlimited
    ],
    policy=Policy([
        Rule(name="recordings", match="recordings/**",
             evict_schedule=(EvictStep(after=24 * 3600, to_tier="tier1"),),
             replicate=True),
        Rule(name="default", match="**"),
    ]),
    replication=ReplicationSettings(workers=2, verify="digest"),
)

service = TierService(config, meta, {"tier0": hot_backend, "tier1": cold_backend})
service.start()
...
service.stop()
```

Here `meta` is your `MetadataStore` and the backends are your `Backend`
implementations.

## Administration

`tierstore.admin.AdminAPI(service, log_buffer)` is a WSGI application serving
JSON at `/api/v1/config`, `/api/v1/tiers`, `/api/v1/files` (query parameters
`prefix`, `tier`, `state`, `limit`, `offset`), `/api/v1/replication/queue`,
`/api/v1/writeguard` and `/api/v1/logs` (`tail`, `level`). Other paths get 404
and a failing view 500. Backend URIs are shown without credentials.

`tierstore.logbuffer.LogBuffer(capacity)` is a `logging.Handler` that keeps
the most recent records; attach it to the `tierstore` logger to feed the logs
view. `tierstore.spa.SPAFileServer(root)` is a WSGI application serving static
files, answering unknown paths with the root `index.html` and refusing
`/api/...`, `/metrics` and `/healthz`.

## What it does not do

- It does not mount a filesystem; callers drive it through `TierService`.
- It ships no concrete storage backends and no metadata store:
  `build_backend` only checks a URI and always raises, directing `file` and
  `s3` URIs to their own adapters.
- It does not read configuration files; configuration is built in code.
- It exports no metrics; the admin API has no metrics endpoint.

## Tests

The test suite uses pytest and lives in `tests/`; install the `test` extra to
get it.