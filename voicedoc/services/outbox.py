"""
Notification outbox.

Queues a confirmation message for the sender by inserting a row into
``notification_outbox``; a separate dispatcher delivers it. One row per
job: a retried stage finds the existing row instead of queueing twice.
"""

from __future__ import annotations

import logging

from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from voicedoc.core.models import Job

logger = logging.getLogger(__name__)

CHANNEL = "whatsapp"
TEMPLATE = "voice_doc_created"


class OutboxNotifier:
    def __init__(self, pool: AsyncConnectionPool, channel: str = CHANNEL):
        self.pool = pool
        self.channel = channel

    async def queue_notification(self, job: Job) -> str:
        """Insert (or find) the outbox row for ``job`` and return its id."""
        payload = {
            "template": TEMPLATE,
            "document_id": job.document_id,
            "sender_name": job.sender_name,
        }
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO notification_outbox (job_id, channel, recipient, payload)
                    VALUES (%(job_id)s, %(channel)s, %(recipient)s, %(payload)s)
                    ON CONFLICT (job_id) DO NOTHING
                    RETURNING id
                    """,
                    {
                        "job_id": job.id,
                        "channel": self.channel,
                        "recipient": job.sender,
                        "payload": Jsonb(payload),
                    },
                )
                row = await cur.fetchone()
                if row is None:
                    await cur.execute(
                        "SELECT id FROM notification_outbox WHERE job_id = %s", (job.id,)
                    )
                    row = await cur.fetchone()
        if row is None:
            raise RuntimeError(f"Outbox row for job {job.id} vanished after insert")
        logger.info("Notification queued", extra={"job_id": job.id})
        return str(row[0])
