import logging
from datetime import datetime, timezone
from typing import List

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from leadflow.errors import AutomationNotFoundError, ExecutionNotFoundError
from leadflow.models.automation import AutomationDocument, AutomationStatus
from leadflow.models.execution import ExecutionDocument, ExecutionStatus
from leadflow.models.scheduled_action import (
    ScheduledAction,
    ScheduledActionDocument,
    ScheduledActionStatus,
)
from leadflow.services.store import ExecutionStore

logger = logging.getLogger(__name__)

# How many recent execution ids each automation remembers for stats de-duplication.
COUNTED_EXECUTIONS_WINDOW = 1000


class MongoExecutionStore(ExecutionStore):
    """MongoDB implementation on top of the Beanie documents.

    Writes go through single-document atomic updates on the Motor collections, so
    concurrent workers never read-modify-write the same counters.
    """

    async def get_automation(self, automation_id):
        doc = await AutomationDocument.find_one(AutomationDocument.automation_id == automation_id)
        if not doc:
            raise AutomationNotFoundError(f"Automation {automation_id} not found")
        return doc.to_automation()

    async def find_automations_by_trigger(self, trigger_type, status=AutomationStatus.ACTIVE):
        query = {"trigger.type": trigger_type}
        if status is not None:
            query["status"] = status.value
        docs = await AutomationDocument.find(query).to_list()
        return [doc.to_automation() for doc in docs]

    async def list_automations(self, status=None):
        query = {"status": status.value} if status is not None else {}
        docs = await AutomationDocument.find(query).sort("-updated_at").to_list()
        return [doc.to_automation() for doc in docs]

    async def save_automation(self, automation):
        now = datetime.now(timezone.utc)
        definition = automation.model_dump(
            mode="json", exclude={"id", "stats", "created_at", "updated_at"}
        )
        definition["updated_at"] = now
        await AutomationDocument.get_motor_collection().update_one(
            {"automation_id": automation.id},
            {
                "$set": definition,
                "$setOnInsert": {
                    "automation_id": automation.id,
                    "stats": automation.stats.model_dump(),
                    "counted_executions": [],
                    "created_at": automation.created_at,
                },
            },
            upsert=True,
        )
        logger.info(f"[STORE] Saved automation {automation.id} ({automation.status.value})")
        return await self.get_automation(automation.id)

    async def delete_automation(self, automation_id):
        result = await AutomationDocument.get_motor_collection().delete_one({"automation_id": automation_id})
        return result.deleted_count > 0

    async def claim_schedule_slot(self, automation_id, slot):
        update = await AutomationDocument.get_motor_collection().update_one(
            {
                "automation_id": automation_id,
                "$or": [{"schedule_fired_at": None}, {"schedule_fired_at": {"$lt": slot}}],
            },
            {"$set": {"schedule_fired_at": slot}},
        )
        if update.modified_count:
            return True
        exists = await AutomationDocument.get_motor_collection().count_documents(
            {"automation_id": automation_id}, limit=1
        )
        if not exists:
            raise AutomationNotFoundError(f"Automation {automation_id} not found")
        return False

    async def create_execution(self, execution):
        doc = ExecutionDocument.from_execution(execution)
        try:
            await doc.insert()
        except DuplicateKeyError:
            logger.info(f"[STORE] Execution {execution.id} already recorded")

    async def append_action_result(self, execution_id, action_index, result):
        slot = f"actions.{action_index}"
        update = await ExecutionDocument.get_motor_collection().update_one(
            {"execution_id": execution_id, f"{slot}.status": None},
            {"$set": {slot: result.model_dump(mode="json")}},
        )
        if update.matched_count == 0:
            # Either the slot is already terminal (replay) or the execution is gone.
            exists = await ExecutionDocument.get_motor_collection().count_documents(
                {"execution_id": execution_id}, limit=1
            )
            if not exists:
                raise ExecutionNotFoundError(f"Execution {execution_id} not found")

    async def finalize_execution(self, execution_id, status, end_time, error=None):
        fields = {"status": status.value, "end_time": end_time}
        if error is not None:
            fields["error"] = error
        update = await ExecutionDocument.get_motor_collection().update_one(
            {"execution_id": execution_id, "status": ExecutionStatus.RUNNING.value},
            {"$set": fields},
        )
        if update.modified_count:
            return True
        exists = await ExecutionDocument.get_motor_collection().count_documents(
            {"execution_id": execution_id}, limit=1
        )
        if not exists:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        return False

    async def get_execution(self, execution_id):
        doc = await ExecutionDocument.find_one(ExecutionDocument.execution_id == execution_id)
        if not doc:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        return doc.to_execution()

    async def list_executions(self, automation_id=None, status=None, limit=50):
        query = {}
        if automation_id:
            query["automation_id"] = automation_id
        if status is not None:
            query["status"] = status.value
        docs = await ExecutionDocument.find(query).sort("-start_time").limit(limit).to_list()
        return [doc.to_execution() for doc in docs]

    async def mark_execution_counted(self, execution_id):
        await ExecutionDocument.get_motor_collection().update_one(
            {"execution_id": execution_id},
            {"$set": {"counted": True}},
        )

    async def list_uncounted_executions(self, ended_before, limit=100):
        docs = await ExecutionDocument.find(
            {
                "status": {"$ne": ExecutionStatus.RUNNING.value},
                "counted": {"$ne": True},
                "end_time": {"$lt": ended_before},
            }
        ).sort("+end_time").limit(limit).to_list()
        return [doc.to_execution() for doc in docs]

    async def increment_stats(self, automation_id, outcome, execution_id, last_run):
        counter = "stats.successful" if outcome == ExecutionStatus.SUCCESS else "stats.failed"
        updated = await AutomationDocument.get_motor_collection().find_one_and_update(
            {"automation_id": automation_id, "counted_executions": {"$ne": execution_id}},
            {
                "$inc": {"stats.runs": 1, counter: 1},
                "$max": {"stats.last_run": last_run},
                "$push": {
                    "counted_executions": {
                        "$each": [execution_id],
                        "$slice": -COUNTED_EXECUTIONS_WINDOW,
                    }
                },
            },
            return_document=ReturnDocument.AFTER,
            projection={"_id": 1},
        )
        if updated:
            return True
        exists = await AutomationDocument.get_motor_collection().count_documents(
            {"automation_id": automation_id}, limit=1
        )
        if not exists:
            raise AutomationNotFoundError(f"Automation {automation_id} not found")
        logger.info(f"[STORE] Stats for execution {execution_id} already counted on {automation_id}")
        return False

    async def enqueue_scheduled_action(self, entry):
        fields = entry.model_dump()
        fields["status"] = entry.status.value
        await ScheduledActionDocument.get_motor_collection().update_one(
            {"execution_id": entry.execution_id, "action_index": entry.action_index},
            {"$setOnInsert": fields},
            upsert=True,
        )

    async def claim_scheduled_action(self, execution_id, action_index, now):
        doc = await ScheduledActionDocument.get_motor_collection().find_one_and_update(
            {
                "execution_id": execution_id,
                "action_index": action_index,
                "status": ScheduledActionStatus.PENDING.value,
            },
            {
                "$set": {"status": ScheduledActionStatus.CLAIMED.value, "claimed_at": now},
                "$inc": {"attempts": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None
        doc.pop("_id", None)
        return ScheduledAction(**doc)

    async def complete_scheduled_action(self, execution_id, action_index, now):
        await ScheduledActionDocument.get_motor_collection().update_one(
            {"execution_id": execution_id, "action_index": action_index},
            {"$set": {"status": ScheduledActionStatus.DONE.value, "completed_at": now}},
        )

    async def list_due_scheduled_actions(self, before) -> List[ScheduledAction]:
        docs = await ScheduledActionDocument.find(
            {"status": ScheduledActionStatus.PENDING.value, "due_time": {"$lt": before}}
        ).sort("+due_time").to_list()
        return [doc.to_scheduled_action() for doc in docs]

    async def list_stale_claimed_actions(self, claimed_before) -> List[ScheduledAction]:
        docs = await ScheduledActionDocument.find(
            {"status": ScheduledActionStatus.CLAIMED.value, "claimed_at": {"$lt": claimed_before}}
        ).to_list()
        return [doc.to_scheduled_action() for doc in docs]
