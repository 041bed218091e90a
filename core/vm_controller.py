from typing import Any, Dict, List, Tuple

from core.errors import AmbiguousMatch, NotFound
from core.logger import log_event
from core.operations import xen_operation
from schemas.vm_schema import (
    PowerState,
    VMActionResult,
    VMCreateSchema,
    VMCreated,
    VMDescriptor,
    VMMetrics,
)


class VMController:
    """
    VM lifecycle operations, proxied to XenAPI.

    Each public method takes one session from ``sessions`` (a SessionManager
    or SessionPool), performs its calls and hands the session back, whether
    the calls succeeded or not. Nothing is cached: every result is a
    snapshot of the pool's current state.
    """

    def __init__(self, sessions) -> None:
        self.sessions = sessions

    def _operation(self, operation: str, description: str):
        return xen_operation(self.sessions, operation, description, tag="vm")

    # ------------------------------------------------------------------
    # Utility methods
    # ------------------------------------------------------------------
    @staticmethod
    def _lookup(api: Any, vm_uuid: str) -> Tuple[str, Dict[str, Any]]:
        ref = api.VM.get_by_uuid(vm_uuid)
        return ref, api.VM.get_record(ref)

    @staticmethod
    def _is_running(record: Dict[str, Any]) -> bool:
        return record.get("power_state") == PowerState.RUNNING.value

    @staticmethod
    def _to_descriptor(record: Dict[str, Any]) -> VMDescriptor:
        return VMDescriptor(
            uuid=record["uuid"],
            name=record["name_label"],
            power_state=PowerState(record["power_state"]),
            memory=int(record["memory_static_max"]),
        )

    @staticmethod
    def _resolve_template(api: Any, name: str) -> str:
        refs = api.VM.get_by_name_label(name)
        templates = [ref for ref in refs if api.VM.get_is_a_template(ref)]
        if not templates:
            raise NotFound(f"Template '{name}' not found", "create_vm")
        if len(templates) > 1:
            raise AmbiguousMatch(
                f"Template name '{name}' matches {len(templates)} templates",
                "create_vm",
            )
        return templates[0]

    # ------------------------------------------------------------------
    # Public VM operations
    # ------------------------------------------------------------------
    def list_vms(self) -> List[VMDescriptor]:
        with self._operation("list_vms", "listing VMs") as api:
            records = api.VM.get_all_records()
            return [
                self._to_descriptor(record)
                for record in records.values()
                if not record.get("is_a_template") and not record.get("is_control_domain")
            ]

    def get_vm_metrics(self, vm_uuid: str) -> VMMetrics:
        with self._operation("get_vm_metrics", f"getting VM metrics for {vm_uuid}") as api:
            _, record = self._lookup(api, vm_uuid)
            metrics = api.VM_metrics.get_record(record["metrics"])
            utilisation = metrics.get("VCPUs_utilisation") or {}
            return VMMetrics(
                uuid=vm_uuid,
                cpu_usage={str(cpu): float(value) for cpu, value in utilisation.items()},
                memory_usage=int(metrics["memory_actual"]),
            )

    def start_vm(self, vm_uuid: str) -> VMActionResult:
        with self._operation("start_vm", f"starting VM {vm_uuid}") as api:
            ref, record = self._lookup(api, vm_uuid)
            name = record["name_label"]
            if self._is_running(record):
                log_event(f"[vm] VM {name} is already running")
                return VMActionResult(
                    uuid=vm_uuid, action="start", changed=False, message=f"VM {name} is already running"
                )
            # start_paused=False, force=False
            api.VM.start(ref, False, False)
            log_event(f"[vm] VM {name} started")
        return VMActionResult(uuid=vm_uuid, action="start", changed=True, message="VM started")

    def stop_vm(self, vm_uuid: str) -> VMActionResult:
        with self._operation("stop_vm", f"stopping VM {vm_uuid}") as api:
            ref, record = self._lookup(api, vm_uuid)
            name = record["name_label"]
            if not self._is_running(record):
                log_event(f"[vm] VM {name} is not running")
                return VMActionResult(
                    uuid=vm_uuid, action="stop", changed=False, message=f"VM {name} is not running"
                )
            api.VM.hard_shutdown(ref)
            log_event(f"[vm] VM {name} stopped")
        return VMActionResult(uuid=vm_uuid, action="stop", changed=True, message="VM stopped")

    def reboot_vm(self, vm_uuid: str) -> VMActionResult:
        with self._operation("reboot_vm", f"rebooting VM {vm_uuid}") as api:
            ref, record = self._lookup(api, vm_uuid)
            name = record["name_label"]
            if not self._is_running(record):
                log_event(f"[vm] VM {name} is not running, cannot reboot")
                return VMActionResult(
                    uuid=vm_uuid,
                    action="reboot",
                    changed=False,
                    message=f"VM {name} is not running. Cannot reboot.",
                )
            api.VM.clean_reboot(ref)
            log_event(f"[vm] VM {name} rebooted")
        return VMActionResult(uuid=vm_uuid, action="reboot", changed=True, message="VM rebooted")

    def create_vm(self, request: VMCreateSchema) -> VMCreated:
        """
        Clone ``request.template`` into a new VM and size it.

        Steps run in order and are not rolled back: a failure half way
        leaves a partially configured VM on the pool.
        """
        with self._operation("create_vm", f"creating VM {request.name}") as api:
            template_ref = self._resolve_template(api, request.template)
            new_ref = api.VM.clone(template_ref, request.name)
            # a clone of a template is itself a template until provisioned
            api.VM.provision(new_ref)
            api.VM.set_is_a_template(new_ref, False)

            # XML-RPC carries int64 values as strings
            memory = str(request.memory)
            api.VM.set_memory_limits(new_ref, memory, memory, memory, memory)
            # VCPUs_at_startup <= VCPUs_max must hold after each setter
            vcpus = str(request.vcpus)
            if request.vcpus < int(api.VM.get_VCPUs_at_startup(new_ref)):
                api.VM.set_VCPUs_at_startup(new_ref, vcpus)
                api.VM.set_VCPUs_max(new_ref, vcpus)
            else:
                api.VM.set_VCPUs_max(new_ref, vcpus)
                api.VM.set_VCPUs_at_startup(new_ref, vcpus)

            if request.start:
                api.VM.start(new_ref, False, False)

            new_uuid = api.VM.get_uuid(new_ref)
            log_event(
                f"[vm] Created VM '{request.name}' from template '{request.template}' "
                f"(memory={request.memory}, vcpus={request.vcpus}, started={request.start})"
            )
        return VMCreated(ref=new_ref, uuid=new_uuid, name=request.name)

    def delete_vm(self, vm_uuid: str) -> VMActionResult:
        with self._operation("delete_vm", f"deleting VM {vm_uuid}") as api:
            ref, record = self._lookup(api, vm_uuid)
            if self._is_running(record):
                api.VM.hard_shutdown(ref)
            api.VM.destroy(ref)
            log_event(f"[vm] VM {vm_uuid} deleted")
        return VMActionResult(uuid=vm_uuid, action="delete", changed=True, message="VM deleted")
