from __future__ import annotations

from arq import run_worker

from whisprnet.core.logging import configure_logging
from whisprnet.workers.pipeline_worker import WorkerSettings


def main() -> None:
    # Same entry point as `arq whisprnet.workers.pipeline_worker.WorkerSettings`.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
