# cloudcost

A library for publishing AWS cost data as Prometheus metrics, with a small
HTTP server to expose them.

- **EC2**: the hourly cost of each instance. Each instance gets a per-core CPU
  price, a per-GiB memory price and a total. The CPU/memory split uses a fixed
  ratio per instance family. On-demand and spot price tiers are both covered.
  The hourly cost of each EBS volume is published too.
- **S3**: storage cost per GiB-hour and operation cost per thousand requests,
  by region and request tier. These come from the last 30 days of daily
  Cost Explorer billing data.

The package needs only the Python standard library (3.10 or later).

## Installation

```
pip install cloudcost
```

## Clients

The collectors never create AWS SDK clients. They call objects that follow
three protocols in `cloudcost.services`:

- `CostExplorerClient`, with `get_cost_and_usage(**kwargs)`
- `EC2Client`, with `describe_instances`, `describe_regions`,
  `describe_spot_price_history` and `describe_volumes`
- `PricingClient`, with `get_products(**kwargs)`

Each method takes the API's request fields as keyword arguments, such as
`NextToken` or `Filters`. It returns a mapping shaped like the API response,
such as `{"Reservations": [...], "NextToken": "..."}`.

A thin wrapper around an SDK session fits these protocols, and so does an
in-memory fake.

## Building blocks

- `cloudcost.ec2.compute`:
  - `list_compute_instances` pages through all reservations.
  - `cluster_name_from_instance` reads the first of the `cluster`,
    `eks:cluster-name` or `aws:eks:cluster-name` tags.
- `cloudcost.ec2.disk`:
  - `list_ebs_volumes` pages through the volumes that were not created from
    snapshots.
  - `name_from_volume` reads the `kubernetes.io/created-for/pv/name` tag.
- `cloudcost.ec2.pricing_map`:
  - `ComputePricingMap.generate` builds instance prices from pricing-API
    product documents and spot price history.
  - `StoragePricingMap.generate` builds EBS prices per GB-month.
  - `get_price_for_volume_type` converts to an hourly price, using 30-day
    months.
  - `weighted_price_for_instance` splits an instance price into CPU and
    memory parts.
  - `list_on_demand_prices`, `list_spot_prices` and `list_storage_prices`
    query the APIs.
  - Lookup failures raise subclasses of `PricingError`, such as
    `RegionNotFoundError` and `InstanceTypeNotFoundError`.
- `cloudcost.ec2.collector`:
  - `Ec2Collector(Ec2Config(...), pricing_client)` refreshes both pricing maps
    at most once per scrape interval.
  - It lists instances and volumes in every configured region, each region
    with its own client.
  - `collect()` returns the cost samples.
- `cloudcost.s3`:
  - `S3Collector(scrape_interval, cost_explorer_client)` fetches billing data
    at most once per interval.
  - It sets the storage and operation gauges it registers.
  - `collect_metrics()` returns `1.0` on success and `0.0` on failure.
  - `collect()` raises `RuntimeError` on failure.
- `cloudcost.aws_provider`:
  - `AWSProvider` runs its collectors concurrently. It adds
    last-scrape-error, duration and time samples for each collector and for
    the provider.
  - `new_aws_provider(AWSConfig(...), client_factory)` builds a collector for
    each service named `S3` or `EC2`. Case does not matter; other names are
    logged and skipped.
  - The factory is called as `client_factory(service, region, profile)`.
    `service` is one of `"ce"`, `"pricing"` or `"ec2"`.
  - For EC2 the factory is called once more for every region that
    `describe_regions` returns.
- `cloudcost.metrics`: a small metrics library.
  - It provides `Gauge`, `Counter`, `GaugeVec`, `CounterVec`, `Desc`,
    `Sample` and `Registry`.
  - `exposition(registry, *names)` renders the registry in the Prometheus
    text format. Families are sorted by name, and the output can be limited
    to the names given.
- `cloudcost.web`:
  - `home_page(path)` returns the landing page HTML.
  - `home_page_handler(path)` returns a WSGI app that serves that page at
    `/` and answers 404 elsewhere.
- `cloudcost.exporter`:
  - `create_registry(provider)` registers a provider and its collectors.
  - `make_app(config, registry)` returns a WSGI app that serves metrics at
    `config.server.path` and the landing page otherwise.
  - `run_server(config, provider, logger)` serves it until SIGINT or SIGTERM.
    It then shuts down within `config.server.timeout`.

### Example

```python
from datetime import timedelta

from cloudcost.config import Config
from cloudcost.exporter import run_server, setup_logger
from cloudcost.aws_provider import AWSConfig, new_aws_provider

def client_factory(service, region, profile):
    ...  # return an object following the matching cloudcost.services protocol

logger = setup_logger("info", "stdout", "text")
provider = new_aws_provider(
    AWSConfig(services=["S3", "EC2"], scrape_interval=timedelta(hours=1), logger=logger),
    client_factory,
)
run_server(Config(), provider, logger)  # listens on :8080, metrics at /metrics
```

## Metrics

Cost metrics:

- `cloudcost_aws_ec2_instance_cpu_usd_per_core_hour`
- `cloudcost_aws_ec2_instance_memory_usd_per_gib_hour`
- `cloudcost_aws_ec2_instance_total_usd_per_hour`
- `cloudcost_aws_ec2_persistent_volume_usd_per_hour`
- `cloudcost_aws_s3_storage_by_location_usd_per_gibyte_hour`
- `cloudcost_aws_s3_operation_by_location_usd_per_krequest`

Exporter health metrics:

- `cloudcost_exporter_aws_s3_cost_api_requests_total`
- `cloudcost_exporter_aws_s3_cost_api_requests_errors_total`
- `cloudcost_exporter_aws_s3_next_scrape`
- `cloudcost_exporter_collector_last_scrape_error`
- `cloudcost_exporter_collector_last_scrape_duration_seconds`
- `cloudcost_exporter_collector_last_scrape_time`
- `cloudcost_exporter_collector_scrapes_total`
- `cloudcost_exporter_aws_collector_success`
- `cloudcost_exporter_last_scrape_error`
- `cloudcost_exporter_last_scrape_duration_seconds`
- `cloudcost_exporter_last_scrape_time`

## The command

```
cloudcost-exporter --help
```

This lists the options. Each option can be written with one or two dashes,
for example `-aws.region` or `--aws.region`.

- `--provider`: the provider to use. Defaults to `aws`.
- `--aws.services`: a service to collect, such as `S3` or `EC2`. Repeat the
  option for more than one service.
- `--aws.region` and `--aws.profile`: the AWS region and profile.
- `--scrape-interval`: how often pricing data is refreshed. Defaults to `1h`.
  Durations are written like `30s`, `1m30s` or `2h`.
- `--server.address` (default `:8080`) and `--server.path` (default
  `/metrics`): where the server listens and serves metrics.
- `--server-timeout`: how long shutdown may take. Defaults to `30s`.
- `--log.level`: `debug`, `info`, `warn` or `error`.
- `--log.output`: `stdout`, `stderr`, or any other value, which is taken as a
  file path.
- `--log.type`: `text` or `json`.

## What the package does not do

- **No AWS SDK clients are built by the package.** The `cloudcost-exporter`
  command parses its options and sets up logging. It then logs
  "Error selecting provider" and exits with status 1, because it has no
  client factory to pass on. To serve metrics, build the provider in Python
  with your own `client_factory`, as in the example above.
- **Only the `aws` provider exists.** Any other `--provider` value is
  rejected as an unknown provider. The `--gcp.*` and `--azure.*` options,
  and `--project-id`, are parsed into `Config` but nothing uses them.
- **`--collector-interval` is not enforced.** It is stored as
  `config.collector.timeout`, but no collector applies it as a time limit.

## Running the tests

```
pip install "cloudcost[test]"
pytest
```