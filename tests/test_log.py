from __future__ import annotations

import io
import json
import threading

from loguru import logger

from relaymatrix.log import configure_logging


def test_text_records_carry_job_and_case():
    buf = io.StringIO()
    configure_logging("INFO", sink=buf)

    logger.bind(job="ica-filter-test+ica", case="test_ica_filter").info("case started")
    logger.info("run started")
    logger.debug("hidden")

    lines = buf.getvalue().splitlines()
    assert len(lines) == 2
    assert "job=ica-filter-test+ica case=test_ica_filter | case started" in lines[0]
    assert "job=- case=- | run started" in lines[1]


def test_json_records():
    buf = io.StringIO()
    configure_logging("debug", json_logs=True, sink=buf)

    logger.bind(job="integration-test[gaiad=gaia6]").warning("acquire attempt 1 failed")

    record = json.loads(buf.getvalue().splitlines()[0])["record"]
    assert record["level"]["name"] == "WARNING"
    assert record["extra"] == {"job": "integration-test[gaiad=gaia6]", "case": "-"}
    assert record["message"] == "acquire attempt 1 failed"


def test_concurrent_workers_keep_lines_whole():
    buf = io.StringIO()
    configure_logging("INFO", json_logs=True, sink=buf)
    start = threading.Barrier(8)

    def worker(n):
        log = logger.bind(job=f"integration-test[gaiad=gaia{n}]", case=f"test_case_{n}")
        start.wait()
        for i in range(50):
            log.info("job {} line {}", n, i)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    lines = buf.getvalue().splitlines()
    assert len(lines) == 8 * 50

    seen = {}
    for line in lines:
        record = json.loads(line)["record"]
        n = int(record["message"].split()[1])
        assert record["extra"] == {"job": f"integration-test[gaiad=gaia{n}]", "case": f"test_case_{n}"}
        seen[n] = seen.get(n, 0) + 1
    assert seen == {n: 50 for n in range(8)}
