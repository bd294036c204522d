import unittest

from nodetune.driver import Driver, FINALIZER_PREFIX
from nodetune.errors import CommandError, ModuleError
from nodetune.models import Node, NodeStatus
from nodetune.store import NodeRegistry, ObjectStore

from support import NodetuneTestCase, RecordingHost, hostconfig, make_config

SYSCTL = {"parameters": [{"name": "vm.swappiness", "value": "10"}]}


class FakeModule:
    def __init__(self, name, log, error=None):
        self.name = name
        self.log = log
        self.error = error

    def reconcile(self):
        self.log.append(self.name)
        if self.error:
            raise ModuleError(self.name, self.error)


class DriverTestCase(NodetuneTestCase):
    def setUp(self):
        super().setUp()
        self.config = make_config(self.tmp)
        self.store = ObjectStore(self.config.store_path)
        self.registry = NodeRegistry(self.config.store_path)
        self.host = RecordingHost(self.config.host_root)
        self.registry.register(Node(name="node-1", labels={"env": "prod"}))
        self.registry.register(Node(name="node-2", labels={"env": "staging"}))

    def driver(self, node="node-1", **kw):
        config = self.config.model_copy(update={"node_name": node})
        return Driver(self.store, self.registry, self.host, config, **kw)


class TestDriver(DriverTestCase):
    def test_applies_and_reports_available(self):
        self.store.create(hostconfig(selector={"env": "prod"}, kernelParameters=SYSCTL))
        result = self.driver().reconcile("default/web")
        self.assertEqual(result.requeue_after, 300)
        self.assertEqual(result.error, "")

        obj = self.store.get("default/web")
        outcome = obj.status.nodes["node-1"]
        self.assertEqual(outcome.status, NodeStatus.AVAILABLE)
        self.assertEqual(outcome.last_generation, 1)
        self.assertEqual(obj.status.condition(NodeStatus.AVAILABLE).reason,
                         "all nodes configured")
        self.assertIn(FINALIZER_PREFIX + "node-1", obj.metadata.finalizers)
        self.assertTrue(self.host.exists("/etc/sysctl.d/50-nodetune-default_web.conf"))

    def test_non_matching_node_never_gets_an_entry(self):
        self.store.create(hostconfig(selector={"env": "prod"}, kernelParameters=SYSCTL))
        driver = self.driver("node-2")
        for _ in range(3):
            result = driver.reconcile("default/web")
            self.assertIsNone(result.requeue_after)
        obj = self.store.get("default/web")
        self.assertNotIn("node-2", obj.status.nodes)
        self.assertEqual(obj.metadata.finalizers, [])
        self.assertEqual(self.host.mutations, 0)

    def test_empty_selector_targets_every_node(self):
        self.store.create(hostconfig(kernelParameters=SYSCTL))
        self.driver("node-2").reconcile("default/web")
        self.assertIn("node-2", self.store.get("default/web").status.nodes)

    def test_not_ready_node_backs_off_with_error(self):
        self.registry.register(Node(name="node-1", labels={"env": "prod"}, ready=False))
        self.store.create(hostconfig(selector={"env": "prod"}, kernelParameters=SYSCTL))
        result = self.driver().reconcile("default/web")
        self.assertEqual(result.requeue_after, 60)
        outcome = self.store.get("default/web").status.nodes["node-1"]
        self.assertEqual(outcome.status, NodeStatus.ERROR)
        self.assertEqual(outcome.error, "node node-1 is not ready")
        self.assertEqual(self.host.mutations, 0)

    def test_readiness_gate_can_be_ignored(self):
        self.config = make_config(self.tmp, ignore_node_ready=True)
        self.registry.register(Node(name="node-1", labels={"env": "prod"}, ready=False))
        self.store.create(hostconfig(selector={"env": "prod"}, kernelParameters=SYSCTL))
        self.driver().reconcile("default/web")
        outcome = self.store.get("default/web").status.nodes["node-1"]
        self.assertEqual(outcome.status, NodeStatus.AVAILABLE)

    def test_module_failure_reports_error_and_still_requeues(self):
        self.host.fail("sysctl", "-p", returncode=1, output="bad value")
        self.store.create(hostconfig(selector={"env": "prod"}, kernelParameters=SYSCTL))
        result = self.driver().reconcile("default/web")
        self.assertEqual(result.requeue_after, 300)
        self.assertTrue(result.error.startswith("kernel-parameters: "))
        obj = self.store.get("default/web")
        self.assertEqual(obj.status.nodes["node-1"].status, NodeStatus.ERROR)
        self.assertEqual(obj.status.condition(NodeStatus.ERROR).reason,
                         "1/1 nodes in error")

    def test_deletion_only_releases_finalizer(self):
        self.store.create(hostconfig(kernelParameters=SYSCTL))
        driver = self.driver()
        driver.reconcile("default/web")
        before = self.host.mutations
        self.assertFalse(self.store.delete("default/web"))

        result = driver.reconcile("default/web")
        self.assertIsNone(result.requeue_after)
        self.assertEqual(self.host.mutations, before)
        self.assertEqual(self.store.list_objects(), [])
        # host state stays applied
        self.assertTrue(self.host.exists("/etc/sysctl.d/50-nodetune-default_web.conf"))

    def test_missing_object_is_ignored(self):
        self.assertIsNone(self.driver().reconcile("default/gone").requeue_after)

    def test_generation_change_marks_in_progress_first(self):
        self.store.create(hostconfig(kernelParameters=SYSCTL))
        seen = []

        def factory(obj, host, config):
            seen.append(self.store.get(obj.key).status.nodes["node-1"].status)
            return []

        self.driver(module_factory=factory).reconcile("default/web")
        self.assertEqual(seen, [NodeStatus.IN_PROGRESS])


class TestModuleSequencing(DriverTestCase):
    def test_modules_run_in_order_and_stop_at_first_error(self):
        self.store.create(hostconfig(kernelParameters=SYSCTL))
        log = []

        def factory(obj, host, config):
            return [
                FakeModule("hosts", log),
                FakeModule("kernel-modules", log,
                           error=CommandError(["modprobe", "x"], 1)),
                FakeModule("kernel-parameters", log),
            ]

        result = self.driver(module_factory=factory).reconcile("default/web")
        self.assertEqual(log, ["hosts", "kernel-modules"])
        self.assertEqual(result.error, "kernel-modules: 'modprobe x' exited 1")
        outcome = self.store.get("default/web").status.nodes["node-1"]
        self.assertEqual(outcome.error, "kernel-modules: 'modprobe x' exited 1")


if __name__ == "__main__":
    unittest.main()
