# fdinput

Input plugins for a log shipping pipeline. Each plugin reads events from a
source and hands them to a pipeline controller, one event per line, and most
of them record how far they have got so that reading can resume after a
restart.

## The controller

Every plugin talks to a controller that you supply. It needs an `in_`
method:

```python
seq_id = controller.in_(source_id, source_name, offset, data, is_new_source)
```

which takes the event bytes and returns the sequence id it gave the event.
Some plugins also call `controller.disable_streams()`,
`controller.use_spread()` (Kafka) or `controller.suggest_decoder(name)`
(Kubernetes, with `"json"` or `"cri"`).

Events handed back to a plugin's `commit(event)` are your pipeline's event
objects. The file input reads `source_id`, `seq_id`, `offset`,
`stream_name` and `is_regular_kind()` from them; the Kafka input reads
`source_id` and `offset`; the journalctl input reads the `__CURSOR` key of
`event.root`.

## Plugins

### File input (`fdinput.file_input.FileInput`)

Watches a directory for files whose names match a glob pattern and reads
them line by line; every complete line is one event. Files and
subdirectories already present are scanned on start (subdirectories must
match `dir_pattern`); afterwards new entries created directly in the watched
directory are picked up as they appear, and done files are checked again
periodically for new data.

Settings live in `fdinput.filecfg.FileConfig`:

| field | default | meaning |
|---|---|---|
| `watching_dir` | required | directory to watch |
| `offsets_file` | required | where offsets are stored |
| `filename_pattern` | `"*"` | glob files must match |
| `dir_pattern` | `"*"` | glob subdirectories must match |
| `persistence_mode` | `async` | `PersistenceMode.ASYNC` saves offsets every `async_interval` if they changed; `PersistenceMode.SYNC` saves on every commit |
| `async_interval` | `"1s"` | duration string or seconds |
| `read_buffer_size` | `131072` | bytes read at a time per worker |
| `max_files` | `16384` | more tracked files than this raises an error |
| `offsets_op` | `continue` | for files found on the first scan: `OffsetsOp.CONTINUE` (saved offsets), `TAIL` (start at the end) or `RESET` (start at the beginning); files found later always start at the beginning |
| `workers_count` | `"gomaxprocs*8"` | integer or expression; `gomaxprocs` is the CPU count |
| `report_interval` | `"10s"` | how often stats are logged |
| `maintenance_interval` | `"10s"` | how often done files and symlinks are checked |

Durations accept forms such as `"500ms"`, `"1s"`, `"1m30s"`.

Lines are read by `fdinput.worker.Worker`s fed by
`fdinput.provider.JobProvider`. A file that shrinks is treated as truncated
and read again from the start. Symlinks are followed and re-checked during
maintenance. A done file is reopened during maintenance, so a deleted file
is released and its job dropped.

```python
from fdinput.filecfg import FileConfig
from fdinput.file_input import FileInput

config = FileConfig(
    watching_dir="/var/log/myapp",
    offsets_file="/var/lib/myapp/offsets.yaml",
    filename_pattern="*.log",
    persistence_mode="async",
)

plugin = FileInput()
plugin.start(config, controller, "main")
...
plugin.commit(event)   # after an event has been delivered
...
plugin.stop()          # stops workers and saves the last offsets
```

#### Offsets file

`fdinput.offsets.OffsetDB` writes it through a temporary file that is
synced and renamed over the old one:

```yaml
- file: /var/log/myapp/app.log
  inode: 1234
  source_id: 5678
  streams:
    not_set: 4096
```

It can be edited by hand, but the parser expects exactly this layout and
raises `OffsetsFormatError` otherwise. When loaded, all streams of one file
are moved back to the smallest offset among them, so every stream is
delivered at least once.

#### Resetting offsets

`FileInput.start` registers the plugin under its pipeline name in
`fdinput.resetter.default_registry`. `ResetterRegistry.reset(path, body)`
takes the pipeline name from the third `/`-separated field of `path`
(for example `/pipelines/main/reset`) and a JSON body:

- `{}` resets everything, `{"inode": N}` or `{"source_id": N}` one file;
- on a started plugin the matching files are read again from the start;
- otherwise the offsets file is removed (or the matching entry deleted
  from it) and the offsets are reloaded.

### HTTP input (`fdinput.http_input.HttpInput`)

Reads newline-delimited events from request bodies and answers every
request as soon as the body has been read; events are not waited for.
`HttpConfig(address=":9200", emulate_mode="no")`; an address of `"off"`
disables listening. With `emulate_mode="elasticsearch"` it answers
`GET /`, `/_xpack` and `/_template/...` like an Elasticsearch node and takes
events from `/_bulk`, so bulk-API clients can send to it. `process_chunk`,
`serve` and `route` can also be called directly without a server.

### journalctl input (`fdinput.journalctl.JournalctlInput`)

Runs `journalctl -o json` (with `-c <cursor>` after a restart, `-n all`
otherwise, plus `journal_args`, default `-f -a`) and sends each output line
as an event. `JournalctlConfig` takes `offsets_file`, `journal_args` and
`max_lines` (0 means no limit). The offsets file is YAML holding the count
of committed entries and the cursor of the last one. `journalctl` must be
installed.

### Kafka input (`fdinput.kafka.KafkaInput`)

Feeds messages of several topics into the pipeline and marks offsets of
committed events. `KafkaConfig(brokers, topics, consumer_group="file-d")`.
`assemble_source_id` and `disassemble_source_id` pack a topic index and a
partition into one source id and back.

### Kubernetes logs

- `fdinput.k8s_input.K8sInput` reads container log files through a
  `FileInput` (configured by `K8sConfig.file_config`), suggests the `json`
  decoder for the docker runtime and `cri` for others, and runs the
  expiry of a `MetaStore`.
- `fdinput.k8s_meta.MetaStore` keeps pod data by namespace, pod and
  container id. `put_meta(pod)` takes a pod as a Kubernetes API JSON
  mapping (`metadata`, `status.containerStatuses[].containerID` of the form
  `docker://<64 chars>`); entries expire when not refreshed.
  `parse_log_filename` splits
  `[pod-name]_[namespace]_[container-name]-[container-id].log`.
- `fdinput.multiline.MultilineAction` joins log fragments the runtime split
  into chunks (returning `ActionResult.COLLAPSE` until a fragment ends with a
  newline or `max_event_size` is near) and adds `k8s_node`,
  `k8s_namespace`, `k8s_pod`, `k8s_container`, `k8s_pod_label_*` and
  `k8s_node_label_*` fields, filtered by `allowed_pod_labels` and
  `allowed_node_labels`.

### Fake input (`fdinput.fake.FakeInput`)

Pushes events by hand with `in_` and reports commits through
`set_commit_fn`; handy in tests of pipelines.

## What this package does not do

- It has no pipeline, no outputs and no command-line program: the
  controller that receives events is yours.
- It has no Kafka client. `KafkaInput` needs a factory
  `factory(brokers, group)` returning an object whose
  `consume(topics, handler, cancelled)` runs a session and calls the
  handler's `setup`, `consume_claim` and `cleanup`.
- It does not talk to the Kubernetes API. Pod data must be fed into
  `MetaStore.put_meta`, and the node name and labels passed to
  `MultilineAction`, by your own code.
- There is no kernel message (`/dev/kmsg`) input.

## Installing

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```