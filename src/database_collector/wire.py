"""Prometheus remote-write protobuf schema.

The message classes are built at import time from a descriptor matching
``prometheus/prompb`` (``types.proto`` and ``remote.proto``), held in a
private descriptor pool so they never clash with another copy of the schema.
"""

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

from .encoder import RemoteWriteBatch

_F = descriptor_pb2.FieldDescriptorProto

_METRIC_TYPES = {
    "unknown": 0,
    "counter": 1,
    "gauge": 2,
    "histogram": 3,
    "gaugehistogram": 4,
    "summary": 5,
    "info": 6,
    "stateset": 7,
}


def _add_field(message, name: str, number: int, field_type: int, repeated: bool = False, type_name: str = ""):
    field = message.field.add(
        name=name,
        number=number,
        type=field_type,
        label=_F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL,
    )
    if type_name:
        field.type_name = type_name
    return field


def _build_file() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="database_collector/prompb/remote.proto",
        package="prometheus",
        syntax="proto3",
    )

    label = file_proto.message_type.add(name="Label")
    _add_field(label, "name", 1, _F.TYPE_STRING)
    _add_field(label, "value", 2, _F.TYPE_STRING)

    sample = file_proto.message_type.add(name="Sample")
    _add_field(sample, "value", 1, _F.TYPE_DOUBLE)
    _add_field(sample, "timestamp", 2, _F.TYPE_INT64)

    series = file_proto.message_type.add(name="TimeSeries")
    _add_field(series, "labels", 1, _F.TYPE_MESSAGE, repeated=True, type_name=".prometheus.Label")
    _add_field(series, "samples", 2, _F.TYPE_MESSAGE, repeated=True, type_name=".prometheus.Sample")

    metadata = file_proto.message_type.add(name="MetricMetadata")
    metric_type = metadata.enum_type.add(name="MetricType")
    for name, number in _METRIC_TYPES.items():
        metric_type.value.add(name=name.upper(), number=number)
    _add_field(metadata, "type", 1, _F.TYPE_ENUM, type_name=".prometheus.MetricMetadata.MetricType")
    _add_field(metadata, "metric_family_name", 2, _F.TYPE_STRING)
    _add_field(metadata, "help", 4, _F.TYPE_STRING)
    _add_field(metadata, "unit", 5, _F.TYPE_STRING)

    request = file_proto.message_type.add(name="WriteRequest")
    _add_field(request, "timeseries", 1, _F.TYPE_MESSAGE, repeated=True, type_name=".prometheus.TimeSeries")
    _add_field(request, "metadata", 3, _F.TYPE_MESSAGE, repeated=True, type_name=".prometheus.MetricMetadata")
    request.reserved_range.add(start=2, end=3)

    return file_proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_file().SerializeToString())

WriteRequest = message_factory.GetMessageClass(_pool.FindMessageTypeByName("prometheus.WriteRequest"))


def build_write_request(batch: RemoteWriteBatch):
    """Build a ``WriteRequest`` message from an encoded batch."""
    request = WriteRequest()
    for series in batch.timeseries:
        ts = request.timeseries.add()
        for name, value in series.labels:
            ts.labels.add(name=name, value=value)
        for sample in series.samples:
            ts.samples.add(value=sample.value, timestamp=sample.timestamp_ms)
    for meta in batch.metadata:
        request.metadata.add(
            type=_METRIC_TYPES.get(meta.type, 0),
            metric_family_name=meta.family_name,
            help=meta.help,
            unit=meta.unit,
        )
    return request


def serialize(batch: RemoteWriteBatch) -> bytes:
    """Serialize an encoded batch to ``WriteRequest`` protobuf bytes."""
    return build_write_request(batch).SerializeToString()
