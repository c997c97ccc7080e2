"""Run ARQ worker. Usage: python -m app.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from app.worker.tasks import get_redis_settings, resend_verification_emails, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [resend_verification_emails]
    cron_jobs = [
        cron(resend_verification_emails, minute={0, 10, 20, 30, 40, 50}, second=0),
    ]
    on_startup = startup
    on_shutdown = shutdown


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
