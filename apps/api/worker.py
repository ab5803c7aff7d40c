"""RQ worker process entrypoint for lifecycle reconciliation jobs."""

from rq import Worker

from services.lifecycle_queue import LIFECYCLE_QUEUE_NAME, get_redis_connection, require_shared_guard


def main():
    require_shared_guard()
    redis_conn = get_redis_connection()
    worker = Worker([LIFECYCLE_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
