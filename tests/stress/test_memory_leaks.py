# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import gc
import os
import sys
import tracemalloc

import psutil
import pytest

from conductor.MANAGERS.service_orchestrator import ServiceOrchestrator
from conductor.MODELS.service_definition import ServiceDefinition
from conductor.RUNTIME.process_runtime import LocalProcessRuntime

from conftest import make_service


def test_orchestrator_memory_leak(fake_runtime, fast_settings, make_config):
    """
    Checks for memory leaks when repeatedly initializing and destroying orchestrators.
    """
    tracemalloc.start()

    # Baseline
    gc.collect()
    snapshot1 = tracemalloc.take_snapshot()

    for _ in range(100):
        config = make_config(make_service("web"), make_service("api", depends_on={"web": None}))
        orchestrator = ServiceOrchestrator(config, runtime=fake_runtime, settings=fast_settings)
        del orchestrator
        del config

    gc.collect()
    snapshot2 = tracemalloc.take_snapshot()
    top_stats = snapshot2.compare_to(snapshot1, "lineno")
    total_diff = sum(stat.size_diff for stat in top_stats)

    # 1 MB is a very generous threshold for 100 iterations of simple object creation
    assert total_diff < 1024 * 1024

    tracemalloc.stop()


@pytest.mark.skipif(not hasattr(psutil.Process, "num_fds"), reason="num_fds is POSIX only")
def test_process_runtime_closes_log_files(tmp_path):
    """
    Checks that starting and removing containers does not leave log files open.
    """
    process = psutil.Process(os.getpid())
    runtime = LocalProcessRuntime(base_dir=str(tmp_path))
    initial_fds = process.num_fds()

    for i in range(30):
        svc = ServiceDefinition(name=f"svc_{i}", image="img", command=[sys.executable, "-c", "print('hi')"])
        handle = runtime.create_container(f"proj-svc_{i}-1", svc, {}, [], [], {})
        runtime.start(handle)
        assert runtime.wait(handle, 10) == 0
        runtime.inspect(handle)
        runtime.remove(handle)

    gc.collect()
    assert process.num_fds() <= initial_fds + 5
