import pytest

from phantom.metrics.registry import (
    Counter,
    CounterVec,
    Desc,
    Gauge,
    GaugeVec,
    Histogram,
    HistogramVec,
    RegistrationError,
    Registry,
    Sample,
    build_fq_name,
)


def test_build_fq_name_joins_parts():
    assert build_fq_name("phantom", "arq", "window_size") == "phantom_arq_window_size"
    assert build_fq_name("phantom", "", "active_connections") == "phantom_active_connections"


def test_build_fq_name_empty_name():
    assert build_fq_name("phantom", "arq", "") == ""


def test_invalid_metric_name_rejected():
    with pytest.raises(ValueError):
        Desc("bad name", "help")


def test_counter_increments():
    c = Counter("requests_total", "help")
    c.inc()
    c.inc(2.5)
    assert c.collect() == [Sample("requests_total", {}, 3.5)]


def test_counter_rejects_negative():
    c = Counter("requests_total", "help")
    with pytest.raises(ValueError):
        c.inc(-1)
    assert c.value == 0


def test_gauge_set_inc_dec():
    g = Gauge("level", "help", namespace="phantom")
    g.set(7)
    assert g.value == 7
    g.inc()
    g.dec()
    assert g.value == 7
    assert g.collect()[0].name == "phantom_level"


def test_histogram_buckets_cumulative():
    h = Histogram("lat", "help", buckets=[1, 2])
    values = [0.5, 1, 1.5, 3]
    for v in values:
        h.observe(v)
    samples = h.collect()
    buckets = [s for s in samples if s.name == "lat_bucket"]
    assert [s.labels["le"] for s in buckets] == ["1", "2", "+Inf"]
    counts = [s.value for s in buckets]
    assert counts == sorted(counts)
    assert counts[-1] == len(values)
    assert counts[0] == 2
    assert h.count == len(values)
    assert h.sum == pytest.approx(sum(values))


def test_histogram_rejects_unsorted_buckets():
    with pytest.raises(ValueError):
        Histogram("lat", "help", buckets=[2, 1])


def test_vec_label_count_checked():
    vec = CounterVec("hits_total", "help", ["mode", "status"])
    with pytest.raises(ValueError):
        vec.labels("udp")


def test_vec_reuses_child():
    vec = GaugeVec("rtt", "help", ["mode"])
    assert vec.labels("udp") is vec.labels("udp")
    vec.labels("udp").set(0.25)
    assert vec.collect() == [Sample("rtt", {"mode": "udp"}, 0.25)]


def test_histogram_vec_reserves_le():
    with pytest.raises(ValueError):
        HistogramVec("lat", "help", ["le"])


def test_histogram_vec_labels_include_le():
    vec = HistogramVec("lat", "help", ["mode"], buckets=[1])
    vec.labels("udp").observe(0.5)
    bucket = [s for s in vec.collect() if s.name == "lat_bucket"][0]
    assert bucket.labels["mode"] == "udp"
    assert "le" in bucket.labels


def test_registry_rejects_duplicate_names():
    reg = Registry()
    reg.register(Counter("dup_total", "help"))
    with pytest.raises(RegistrationError):
        reg.register(Gauge("dup_total", "help"))


def test_registry_rejects_same_collector_twice():
    reg = Registry()
    c = Counter("once_total", "help")
    reg.register(c)
    with pytest.raises(RegistrationError):
        reg.register(c)


def test_registry_collect_gathers_all():
    reg = Registry()
    c = Counter("a_total", "help")
    g = Gauge("b", "help")
    reg.register(c)
    reg.register(g)
    c.inc()
    g.set(4)
    names = {s.name: s.value for s in reg.collect()}
    assert names == {"a_total": 1.0, "b": 4.0}


def test_expose_text_format():
    reg = Registry()
    vec = CounterVec("requests_total", "Total requests", ["mode"])
    reg.register(vec)
    vec.labels("udp").inc(2)
    text = reg.expose()
    assert "# HELP requests_total Total requests" in text
    assert "# TYPE requests_total counter" in text
    assert 'requests_total{mode="udp"} 2' in text


def test_expose_escapes_label_values():
    reg = Registry()
    vec = CounterVec("errs_total", "help", ["type"])
    reg.register(vec)
    vec.labels('a"b').inc()
    assert 'type="a\\"b"' in reg.expose()