import os
import unittest
from pathlib import Path

from nodetune.errors import CommandError, HostPathError, PreconditionError
from nodetune.host import (
    DebianPlatform,
    HostSystem,
    RedHatPlatform,
    parse_os_release,
    platform_for,
)

from support import NodetuneTestCase

UBUNTU = 'NAME="Ubuntu"\nID=ubuntu\nID_LIKE=debian\nVERSION_ID="24.04"\n'
ROCKY = 'NAME="Rocky Linux"\nID="rocky"\nID_LIKE="rhel centos fedora"\n'


class TestPlatform(NodetuneTestCase):
    def test_parse_os_release(self):
        info = parse_os_release("# comment\n" + ROCKY)
        self.assertEqual(info["ID"], "rocky")
        self.assertEqual(info["ID_LIKE"], "rhel centos fedora")

    def test_family_detection(self):
        self.assertIsInstance(platform_for(parse_os_release(UBUNTU)), DebianPlatform)
        self.assertIsInstance(platform_for(parse_os_release(ROCKY)), RedHatPlatform)
        self.assertIsInstance(platform_for({"ID": "centos"}), RedHatPlatform)
        self.assertIsInstance(platform_for({"ID": "plan9"}), DebianPlatform)

    def test_host_reads_os_release_under_root(self):
        (self.tmp / "etc").mkdir()
        (self.tmp / "etc" / "os-release").write_text(ROCKY)
        host = HostSystem(root=str(self.tmp))
        self.assertEqual(host.platform.family, "redhat")

    def test_package_commands(self):
        deb, rh = DebianPlatform(), RedHatPlatform()
        self.assertEqual(deb.install_cmd([deb.package_spec("jq", "1.6-2")]),
                         ["apt-get", "install", "-y", "--allow-downgrades", "jq=1.6-2"])
        self.assertEqual(rh.install_cmd([rh.package_spec("jq", "1.6")]),
                         ["dnf", "install", "-y", "jq-1.6"])
        self.assertEqual(rh.package_spec("jq", ""), "jq")

    def test_redhat_grub_uses_first_existing_cfg(self):
        host = HostSystem(root=str(self.tmp))
        with self.assertRaises(PreconditionError):
            RedHatPlatform().grub_update_cmd(host)
        cfg = self.tmp / "boot" / "efi" / "EFI" / "redhat"
        cfg.mkdir(parents=True)
        (cfg / "grub.cfg").write_text("")
        self.assertEqual(RedHatPlatform().grub_update_cmd(host),
                         ["grub2-mkconfig", "-o", "/boot/efi/EFI/redhat/grub.cfg"])


class TestHostFiles(NodetuneTestCase):
    def setUp(self):
        super().setUp()
        self.host = HostSystem(root=str(self.tmp))

    def test_paths_are_under_root(self):
        self.assertEqual(self.host.path("/etc/hosts"), self.tmp / "etc" / "hosts")
        self.assertTrue(self.host.uses_chroot)
        self.assertFalse(HostSystem(root="/").uses_chroot)

    def test_write_read_remove(self):
        self.assertIsNone(self.host.read_text("/etc/sysctl.d/x.conf"))
        self.host.write_text("/etc/sysctl.d/x.conf", "a = 1\n")
        self.assertEqual(self.host.read_text("/etc/sysctl.d/x.conf"), "a = 1\n")
        self.assertTrue(self.host.remove("/etc/sysctl.d/x.conf"))
        self.assertFalse(self.host.remove("/etc/sysctl.d/x.conf"))
        self.assertEqual(self.host.mutations, 2)

    def test_remove_refuses_directories(self):
        self.host.write_text("/etc/pki/nodetune-default_web/corp", "x\n")
        with self.assertRaises(HostPathError):
            self.host.remove("/etc/pki/nodetune-default_web")
        self.assertTrue(self.host.exists("/etc/pki/nodetune-default_web/corp"))
        self.assertTrue(self.host.is_file("/etc/pki/nodetune-default_web/corp"))
        self.assertFalse(self.host.is_file("/etc/pki/nodetune-default_web"))

    def test_local_view_drops_the_root(self):
        local = self.host.local()
        self.assertEqual(local.root, Path("/"))
        self.assertFalse(local.uses_chroot)
        self.assertEqual(local._argv(["sysctl", "-p"]), ["sysctl", "-p"])
        unrooted = HostSystem(root="/")
        self.assertIs(unrooted.local(), unrooted)

    def test_write_keeps_existing_mode(self):
        self.host.write_text("/etc/cron.d/job", "x\n", mode=0o600)
        self.host.write_text("/etc/cron.d/job", "y\n")
        self.assertEqual(os.stat(self.host.path("/etc/cron.d/job")).st_mode & 0o777, 0o600)

    def test_dry_run_writes_nothing(self):
        host = HostSystem(root=str(self.tmp), dry_run=True)
        host.write_text("/etc/motd", "hi\n")
        self.assertFalse(host.exists("/etc/motd"))
        self.assertIsNone(host.run_cmd(["false"]))
        self.assertEqual(host.mutations, 0)

    def test_list_and_prune_dir(self):
        self.host.write_text("/d/a", "")
        self.host.write_text("/d/b", "")
        self.assertEqual(self.host.list_dir("/d"), ["a", "b"])
        self.assertEqual(self.host.list_dir("/missing"), [])
        self.host.prune_dir("/d")
        self.assertTrue(self.host.exists("/d"))
        self.host.remove("/d/a")
        self.host.remove("/d/b")
        self.host.prune_dir("/d")
        self.assertFalse(self.host.exists("/d"))


class TestHostCommands(NodetuneTestCase):
    def setUp(self):
        super().setUp()
        self.host = HostSystem(root="/", timeout=5)

    def test_success(self):
        result = self.host.run_cmd(["sh", "-c", "echo ok"])
        self.assertEqual(result.stdout.strip(), "ok")
        self.assertEqual(self.host.mutations, 1)

    def test_nonzero_exit_raises_with_output(self):
        with self.assertRaises(CommandError) as ctx:
            self.host.run_cmd(["sh", "-c", "echo broken >&2; exit 3"])
        self.assertEqual(ctx.exception.returncode, 3)
        self.assertIn("broken", str(ctx.exception))

    def test_timeout(self):
        host = HostSystem(root="/", timeout=0.2)
        with self.assertRaises(CommandError) as ctx:
            host.run_cmd(["sleep", "5"])
        self.assertIsNone(ctx.exception.returncode)
        self.assertIn("timed out", str(ctx.exception))

    def test_probe_does_not_raise_or_count(self):
        result = self.host.probe(["sh", "-c", "exit 3"])
        self.assertEqual(result.returncode, 3)
        self.assertEqual(self.host.mutations, 0)

    def test_chroot_argv(self):
        host = HostSystem(root="/host")
        self.assertEqual(host._argv(["sysctl", "-p"]),
                         ["chroot", "/host", "sysctl", "-p"])


if __name__ == "__main__":
    unittest.main()
