"""Tests for core.vm_controller.VMController against a XenAPI double."""

from __future__ import annotations

import pytest
import XenAPI

from conftest import FakeSessions
from core.errors import AmbiguousMatch, NotFound, UpstreamError, XenConnectionError, ConnectionFailure
from core.vm_controller import VMController
from schemas.vm_schema import PowerState, VMCreateSchema

VM_UUID = "3f2504e0-4f89-41d3-9a0c-0305e82c3301"
VM_REF = "OpaqueRef:vm-1"


def vm_record(uuid, name, power_state="Halted", template=False, control=False, memory="1073741824"):
    return {
        "uuid": uuid,
        "name_label": name,
        "power_state": power_state,
        "is_a_template": template,
        "is_control_domain": control,
        "memory_static_max": memory,
        "metrics": f"OpaqueRef:metrics-{name}",
    }


def vm_call_names(xenapi):
    return [name for name, _, _ in xenapi.VM.method_calls]


@pytest.fixture
def controller(sessions):
    return VMController(sessions)


@pytest.fixture
def existing_vm(xenapi):
    def _set(power_state):
        xenapi.VM.get_by_uuid.return_value = VM_REF
        xenapi.VM.get_record.return_value = vm_record(VM_UUID, "web-01", power_state)

    return _set


class TestListVMs:
    def test_filters_templates_and_control_domain(self, controller, xenapi, sessions):
        xenapi.VM.get_all_records.return_value = {
            "OpaqueRef:a": vm_record("uuid-a", "alpha", "Running"),
            "OpaqueRef:t": vm_record("uuid-t", "Debian 12", template=True),
            "OpaqueRef:d": vm_record("uuid-d", "Control domain", "Running", control=True),
            "OpaqueRef:b": vm_record("uuid-b", "bravo", "Suspended", memory="2147483648"),
        }
        vms = controller.list_vms()
        assert [vm.name for vm in vms] == ["alpha", "bravo"]
        assert vms[0].power_state is PowerState.RUNNING
        assert vms[1].memory == 2147483648
        assert sessions.opened == sessions.closed == 1

    def test_only_templates_yields_empty_list(self, controller, xenapi):
        xenapi.VM.get_all_records.return_value = {
            "OpaqueRef:t": vm_record("uuid-t", "Debian 12", template=True),
        }
        assert controller.list_vms() == []

    def test_upstream_failure_is_wrapped(self, controller, xenapi, sessions):
        failure = XenAPI.Failure(["INTERNAL_ERROR", "db locked"])
        xenapi.VM.get_all_records.side_effect = failure
        with pytest.raises(UpstreamError) as exc_info:
            controller.list_vms()
        assert type(exc_info.value) is UpstreamError
        assert exc_info.value.operation == "list_vms"
        assert exc_info.value.__cause__ is failure
        assert sessions.closed == 1

    def test_connection_error_passes_through(self, xenapi):
        error = XenConnectionError("Connection failed: refused", ConnectionFailure.REFUSED)
        controller = VMController(FakeSessions(xenapi, error=error))
        with pytest.raises(XenConnectionError):
            controller.list_vms()
        xenapi.VM.get_all_records.assert_not_called()


class TestMetrics:
    def test_returns_snapshot(self, controller, xenapi, existing_vm):
        existing_vm("Running")
        xenapi.VM_metrics.get_record.return_value = {
            "VCPUs_utilisation": {"0": 0.25, "1": 0.5},
            "memory_actual": "536870912",
        }
        metrics = controller.get_vm_metrics(VM_UUID)
        xenapi.VM_metrics.get_record.assert_called_once_with("OpaqueRef:metrics-web-01")
        assert metrics.cpu_usage == {"0": 0.25, "1": 0.5}
        assert metrics.memory_usage == 536870912

    def test_unknown_uuid_is_not_found(self, controller, xenapi, sessions):
        xenapi.VM.get_by_uuid.side_effect = XenAPI.Failure(["UUID_INVALID", "VM", VM_UUID])
        with pytest.raises(NotFound):
            controller.get_vm_metrics(VM_UUID)
        xenapi.VM_metrics.get_record.assert_not_called()
        assert sessions.closed == 1

    def test_missing_metrics_record_is_not_found(self, controller, xenapi, existing_vm):
        existing_vm("Halted")
        xenapi.VM_metrics.get_record.side_effect = XenAPI.Failure(["HANDLE_INVALID", "VM_metrics", "x"])
        with pytest.raises(NotFound):
            controller.get_vm_metrics(VM_UUID)


class TestPowerActions:
    def test_start_running_vm_is_noop(self, controller, xenapi, existing_vm):
        existing_vm("Running")
        result = controller.start_vm(VM_UUID)
        assert result.changed is False
        assert "already running" in result.message
        xenapi.VM.start.assert_not_called()

    def test_start_halted_vm(self, controller, xenapi, existing_vm):
        existing_vm("Halted")
        result = controller.start_vm(VM_UUID)
        assert result.changed is True
        xenapi.VM.start.assert_called_once_with(VM_REF, False, False)

    @pytest.mark.parametrize("state", ["Halted", "Suspended", "Paused"])
    def test_stop_not_running_is_noop(self, controller, xenapi, existing_vm, state):
        existing_vm(state)
        result = controller.stop_vm(VM_UUID)
        assert result.changed is False
        xenapi.VM.hard_shutdown.assert_not_called()

    def test_stop_running_vm(self, controller, xenapi, existing_vm):
        existing_vm("Running")
        assert controller.stop_vm(VM_UUID).changed is True
        xenapi.VM.hard_shutdown.assert_called_once_with(VM_REF)

    def test_reboot_not_running_is_noop(self, controller, xenapi, existing_vm):
        existing_vm("Halted")
        result = controller.reboot_vm(VM_UUID)
        assert result.changed is False
        xenapi.VM.clean_reboot.assert_not_called()

    def test_reboot_running_vm(self, controller, xenapi, existing_vm):
        existing_vm("Running")
        assert controller.reboot_vm(VM_UUID).message == "VM rebooted"
        xenapi.VM.clean_reboot.assert_called_once_with(VM_REF)

    def test_start_failure_releases_session(self, controller, xenapi, existing_vm, sessions):
        existing_vm("Halted")
        xenapi.VM.start.side_effect = XenAPI.Failure(["VM_BAD_POWER_STATE", VM_REF, "halted", "running"])
        with pytest.raises(UpstreamError):
            controller.start_vm(VM_UUID)
        assert sessions.opened == sessions.closed == 1


class TestDelete:
    def test_running_vm_is_shut_down_first(self, controller, xenapi, existing_vm):
        existing_vm("Running")
        controller.delete_vm(VM_UUID)
        assert vm_call_names(xenapi) == ["get_by_uuid", "get_record", "hard_shutdown", "destroy"]

    def test_halted_vm_is_only_destroyed(self, controller, xenapi, existing_vm):
        existing_vm("Halted")
        result = controller.delete_vm(VM_UUID)
        assert vm_call_names(xenapi) == ["get_by_uuid", "get_record", "destroy"]
        assert result.message == "VM deleted"


class TestCreate:
    @pytest.fixture
    def template(self, xenapi):
        xenapi.VM.get_by_name_label.return_value = ["OpaqueRef:tpl"]
        xenapi.VM.get_is_a_template.return_value = True
        xenapi.VM.clone.return_value = "OpaqueRef:new"
        xenapi.VM.get_uuid.return_value = "9b2c7f0a-1d2e-4f3a-8b4c-5d6e7f8a9b0c"
        xenapi.VM.get_VCPUs_at_startup.return_value = "1"

    def test_clones_and_sizes_vm(self, controller, xenapi, template):
        request = VMCreateSchema(name="web-02", template="Debian 12", memory=1073741824, vcpus=2)
        created = controller.create_vm(request)

        xenapi.VM.clone.assert_called_once_with("OpaqueRef:tpl", "web-02")
        xenapi.VM.provision.assert_called_once_with("OpaqueRef:new")
        xenapi.VM.set_is_a_template.assert_called_once_with("OpaqueRef:new", False)
        xenapi.VM.set_memory_limits.assert_called_once_with(
            "OpaqueRef:new", "1073741824", "1073741824", "1073741824", "1073741824"
        )
        xenapi.VM.set_VCPUs_max.assert_called_once_with("OpaqueRef:new", "2")
        xenapi.VM.set_VCPUs_at_startup.assert_called_once_with("OpaqueRef:new", "2")
        xenapi.VM.start.assert_not_called()
        assert created.ref == "OpaqueRef:new"
        assert created.uuid == "9b2c7f0a-1d2e-4f3a-8b4c-5d6e7f8a9b0c"

    def test_optionally_starts_vm(self, controller, xenapi, template):
        request = VMCreateSchema(name="web-02", template="Debian 12", memory=1024, vcpus=1, start=True)
        controller.create_vm(request)
        xenapi.VM.start.assert_called_once_with("OpaqueRef:new", False, False)

    def test_non_template_matches_are_ignored(self, controller, xenapi):
        xenapi.VM.get_by_name_label.return_value = ["OpaqueRef:vm", "OpaqueRef:tpl"]
        xenapi.VM.get_is_a_template.side_effect = lambda ref: ref == "OpaqueRef:tpl"
        xenapi.VM.clone.return_value = "OpaqueRef:new"
        xenapi.VM.get_uuid.return_value = "9b2c7f0a-1d2e-4f3a-8b4c-5d6e7f8a9b0c"
        controller.create_vm(VMCreateSchema(name="x", template="Debian 12", memory=1024, vcpus=1))
        xenapi.VM.clone.assert_called_once_with("OpaqueRef:tpl", "x")

    def test_ambiguous_template(self, controller, xenapi):
        xenapi.VM.get_by_name_label.return_value = ["OpaqueRef:t1", "OpaqueRef:t2"]
        xenapi.VM.get_is_a_template.return_value = True
        with pytest.raises(AmbiguousMatch):
            controller.create_vm(VMCreateSchema(name="x", template="Debian 12", memory=1024, vcpus=1))
        xenapi.VM.clone.assert_not_called()

    def test_unknown_template(self, controller, xenapi, sessions):
        xenapi.VM.get_by_name_label.return_value = []
        with pytest.raises(NotFound):
            controller.create_vm(VMCreateSchema(name="x", template="Nope", memory=1024, vcpus=1))
        xenapi.VM.clone.assert_not_called()
        assert sessions.closed == 1

    def test_raising_vcpus_sets_max_first(self, controller, xenapi, template):
        controller.create_vm(VMCreateSchema(name="x", template="Debian 12", memory=1024, vcpus=4))
        assert vm_call_names(xenapi)[-3:-1] == ["set_VCPUs_max", "set_VCPUs_at_startup"]

    def test_lowering_vcpus_sets_startup_first(self, controller, xenapi, template):
        xenapi.VM.get_VCPUs_at_startup.return_value = "2"
        controller.create_vm(VMCreateSchema(name="x", template="Debian 12", memory=1024, vcpus=1))
        assert vm_call_names(xenapi)[-3:-1] == ["set_VCPUs_at_startup", "set_VCPUs_max"]
        xenapi.VM.set_VCPUs_at_startup.assert_called_once_with("OpaqueRef:new", "1")
        xenapi.VM.set_VCPUs_max.assert_called_once_with("OpaqueRef:new", "1")

    def test_failure_after_clone_is_not_rolled_back(self, controller, xenapi, template):
        xenapi.VM.set_VCPUs_max.side_effect = XenAPI.Failure(["VCPU_OUT_OF_RANGE"])
        with pytest.raises(UpstreamError):
            controller.create_vm(VMCreateSchema(name="x", template="Debian 12", memory=1024, vcpus=64))
        xenapi.VM.destroy.assert_not_called()
