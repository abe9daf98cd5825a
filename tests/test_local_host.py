import io
import json
import tarfile
import tempfile
import unittest
from pathlib import Path

import httpx

from channelpin.client import ArchiveClient, ArchiveHTTPError, ChannelpinError
from channelpin.hooks import refresh_hook
from channelpin.local_host import LocalPackageHost, package_filename, parse_archive_payload
from channelpin.reconcile import (
    InstalledPackage,
    InstallFailure,
    PackageDescriptor,
    PinEntry,
    ReconciliationEngine,
    UninstallFailure,
)

MELPA_URL = "https://melpa.org/packages/"
STABLE_URL = "https://stable.melpa.org/packages/"

MELPA_ARCHIVE = {
    "foo": {"ver": [20140101, 5], "type": "tar", "desc": "Foo mode"},
    "bar": {"ver": [20140202, 7], "type": "single", "desc": "Bar helpers"},
}
STABLE_ARCHIVE = {
    "foo": {"ver": [1, 2, 0], "type": "tar", "desc": "Foo mode"},
}


def _tar_bytes(root: str, files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tf:
        for name, text in files.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(f"{root}/{name}")
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class FakeArchiveClient:
    def __init__(self, files: dict[str, bytes]) -> None:
        self._files = files
        self.requested: list[str] = []

    def download(self, url: str) -> bytes:
        self.requested.append(url)
        if url not in self._files:
            raise ArchiveHTTPError(404, "not found")
        return self._files[url]

    def close(self) -> None:
        pass


def _files() -> dict[str, bytes]:
    return {
        MELPA_URL + "foo-20140101.5.tar": _tar_bytes("foo-20140101.5", {"foo.el": ";; unstable foo\n"}),
        STABLE_URL + "foo-1.2.0.tar": _tar_bytes("foo-1.2.0", {"foo.el": ";; stable foo\n", "foo-pkg.el": ""}),
        MELPA_URL + "bar-20140202.7.el": b";; bar\n",
    }


class TestArchivePayload(unittest.TestCase):
    def test_parses_entries_and_skips_malformed(self) -> None:
        payload = dict(MELPA_ARCHIVE)
        payload["broken"] = {"ver": "not-a-list"}
        payload["weird"] = {"ver": [1], "type": "rpm"}
        payload["junk"] = []

        with self.assertLogs("channelpin.local_host", level="WARNING"):
            descriptors = parse_archive_payload("melpa", payload)

        self.assertEqual(
            descriptors,
            [
                PackageDescriptor("foo", (20140101, 5), "melpa", kind="tar", summary="Foo mode"),
                PackageDescriptor("bar", (20140202, 7), "melpa", kind="single", summary="Bar helpers"),
            ],
        )

    def test_rejects_non_object_payload(self) -> None:
        with self.assertRaises(ChannelpinError):
            parse_archive_payload("melpa", ["foo"])

    def test_package_filename(self) -> None:
        self.assertEqual(package_filename(PackageDescriptor("foo", (1, 2, 0), "s")), "foo-1.2.0.tar")
        self.assertEqual(package_filename(PackageDescriptor("bar", (2014, 1), "m", kind="single")), "bar-2014.1.el")


class TestLocalPackageHost(unittest.TestCase):
    def _host(self, td: str, client=None) -> LocalPackageHost:
        host = LocalPackageHost(state_dir=Path(td) / "state", client=client or FakeArchiveClient(_files()))
        host.add_repository("melpa", MELPA_URL)
        host.add_repository("melpa-stable", STABLE_URL)
        return host

    def test_repositories_keep_configured_order(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            host = self._host(td)
            self.assertEqual([r.name for r in host.repositories()], ["melpa", "melpa-stable"])
            with self.assertRaises(ChannelpinError):
                host.add_repository("melpa", MELPA_URL)
            host.remove_repository("melpa")
            self.assertEqual([r.name for r in host.repositories()], ["melpa-stable"])
            with self.assertRaises(ChannelpinError):
                host.remove_repository("melpa")

    def test_refresh_runs_hooks_against_previous_catalog(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            host = self._host(td)
            seen: list[set[str]] = []
            host.add_refresh_hook(lambda: seen.append(set(host.catalog())))

            host.refresh("melpa", MELPA_ARCHIVE)
            host.refresh("melpa-stable", STABLE_ARCHIVE)

            self.assertEqual(seen, [set(), {"foo", "bar"}])
            foo = host.catalog()["foo"]
            self.assertEqual([d.source_repository_name for d in foo], ["melpa", "melpa-stable"])

            with self.assertRaises(ChannelpinError):
                host.refresh("gnu", {})

    def test_rejected_payload_does_not_run_hooks(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            host = self._host(td)
            host.refresh("melpa", MELPA_ARCHIVE)
            host.refresh("melpa-stable", STABLE_ARCHIVE)
            calls: list[str] = []
            host.add_refresh_hook(lambda: calls.append("hook"))
            host.add_refresh_hook(lambda: refresh_hook(ReconciliationEngine(host), host))

            with self.assertRaises(ChannelpinError):
                host.refresh("melpa-stable", ["not", "an", "object"])

            self.assertEqual(calls, [])
            self.assertEqual(host.pins(), [])
            self.assertEqual(sorted(host.catalog()), ["bar", "foo"])

    def test_refresh_replaces_entries_of_one_archive(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            host = self._host(td)
            host.refresh("melpa", MELPA_ARCHIVE)
            host.refresh("melpa", {"foo": {"ver": [20150101, 1], "type": "tar"}})
            catalog = host.catalog()
            self.assertNotIn("bar", catalog)
            self.assertEqual(catalog["foo"][0].version, (20150101, 1))

    def test_refresh_from_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            host = self._host(td)
            path = Path(td) / "archive.json"
            path.write_text(json.dumps(STABLE_ARCHIVE), encoding="utf-8")
            loaded = host.refresh_from_file("melpa-stable", path)
            self.assertEqual([d.package_name for d in loaded], ["foo"])

            bad = Path(td) / "bad.json"
            bad.write_text("{nope", encoding="utf-8")
            with self.assertRaises(ChannelpinError):
                host.refresh_from_file("melpa-stable", bad)

    def test_pins_are_append_only_and_unique(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            host = self._host(td)
            first = host.append_pins([PinEntry("foo", "melpa-stable")])
            again = host.append_pins([PinEntry("foo", "melpa-stable"), PinEntry("baz", "melpa-stable")])
            self.assertEqual(first, [PinEntry("foo", "melpa-stable")])
            self.assertEqual(again, [PinEntry("baz", "melpa-stable")])
            self.assertEqual(host.pins(), [PinEntry("foo", "melpa-stable"), PinEntry("baz", "melpa-stable")])

    def test_select_descriptor_prefers_pin_over_higher_version(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            host = self._host(td)
            host.refresh("melpa", MELPA_ARCHIVE)
            host.refresh("melpa-stable", STABLE_ARCHIVE)

            self.assertEqual(host.select_descriptor("foo").source_repository_name, "melpa")
            refresh_hook(ReconciliationEngine(host), host)
            self.assertEqual(host.select_descriptor("foo").source_repository_name, "melpa-stable")
            self.assertEqual(host.select_descriptor("bar").source_repository_name, "melpa")
            with self.assertRaises(ChannelpinError):
                host.select_descriptor("missing")

    def test_install_unpacks_tar_and_single_file_packages(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            host = self._host(td)
            host.refresh("melpa", MELPA_ARCHIVE)
            foo = host.install(host.select_descriptor("foo"))
            bar = host.install(host.select_descriptor("bar"))

            self.assertEqual(foo, InstalledPackage("foo", (20140101, 5), "melpa"))
            self.assertEqual(bar, InstalledPackage("bar", (20140202, 7), "melpa"))
            packages = host.packages_dir
            self.assertEqual((packages / "foo-20140101.5" / "foo.el").read_text(encoding="utf-8"), ";; unstable foo\n")
            self.assertTrue((packages / "bar-20140202.7" / "bar.el").is_file())
            self.assertTrue((packages / "foo-20140101.5" / ".channelpin-meta.json").is_file())
            self.assertEqual(sorted(host.installed()), ["bar", "foo"])

    def test_install_failures(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            host = self._host(td, client=FakeArchiveClient({}))
            host.refresh("melpa", MELPA_ARCHIVE)
            with self.assertRaises(InstallFailure) as ctx:
                host.install(host.select_descriptor("foo"))
            self.assertIsInstance(ctx.exception.__cause__, ArchiveHTTPError)

            with self.assertRaises(InstallFailure):
                host.install(PackageDescriptor("foo", (1, 0), "gnu"))
            self.assertEqual(host.installed(), {})

    def test_install_rejects_path_traversal(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            evil = _tar_bytes("..", {"escape.el": "boom"})
            client = FakeArchiveClient({MELPA_URL + "foo-20140101.5.tar": evil})
            host = self._host(td, client=client)
            host.refresh("melpa", MELPA_ARCHIVE)
            with self.assertRaises(InstallFailure):
                host.install(host.select_descriptor("foo"))
            self.assertFalse((host.packages_dir.parent / "escape.el").exists())

    def test_install_truncated_tar_is_install_failure(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            payload = _tar_bytes("foo-1.2.0", {"foo.el": ";; stable foo\n" * 400})
            self.assertGreater(len(payload), 3000)
            client = FakeArchiveClient({STABLE_URL + "foo-1.2.0.tar": payload[:1500]})
            host = self._host(td, client=client)
            with self.assertRaises(InstallFailure):
                host.install(PackageDescriptor("foo", (1, 2, 0), "melpa-stable"))
            self.assertEqual(host.installed(), {})
            self.assertFalse((host.packages_dir / "foo-1.2.0").exists())

    def test_uninstall(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            host = self._host(td)
            host.refresh("melpa", MELPA_ARCHIVE)
            record = host.install(host.select_descriptor("foo"))
            host.uninstall(record)
            self.assertEqual(host.installed(), {})
            self.assertFalse((host.packages_dir / "foo-20140101.5").exists())
            with self.assertRaises(UninstallFailure):
                host.uninstall(record)

    def test_uninstall_keeps_directory_shared_with_another_archive(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            tar = _tar_bytes("foo-1.2.0", {"foo.el": ";; stable foo\n"})
            client = FakeArchiveClient({MELPA_URL + "foo-1.2.0.tar": tar, STABLE_URL + "foo-1.2.0.tar": tar})
            host = self._host(td, client=client)
            from_melpa = host.install(PackageDescriptor("foo", (1, 2, 0), "melpa"))
            from_stable = host.install(PackageDescriptor("foo", (1, 2, 0), "melpa-stable"))

            host.uninstall(from_melpa)
            self.assertEqual(host.installed()["foo"], [from_stable])
            self.assertTrue((host.packages_dir / "foo-1.2.0" / "foo.el").is_file())

            host.uninstall(from_stable)
            self.assertFalse((host.packages_dir / "foo-1.2.0").exists())

    def test_end_to_end_reconcile(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            host = self._host(td)
            host.refresh("melpa", MELPA_ARCHIVE)
            host.install(host.select_descriptor("foo"))
            host.install(host.select_descriptor("bar"))
            host.refresh("melpa-stable", STABLE_ARCHIVE)

            engine = ReconciliationEngine(host)
            changes = engine.reconcile()

            self.assertEqual([c.package_name for c in changes], ["foo"])
            self.assertEqual(host.installed()["foo"], [InstalledPackage("foo", (1, 2, 0), "melpa-stable")])
            self.assertEqual(host.installed()["bar"], [InstalledPackage("bar", (20140202, 7), "melpa")])
            self.assertFalse((host.packages_dir / "foo-20140101.5").exists())
            self.assertEqual((host.packages_dir / "foo-1.2.0" / "foo.el").read_text(encoding="utf-8"), ";; stable foo\n")
            self.assertEqual(engine.reconcile(), [])


class TestArchiveClient(unittest.TestCase):
    def _client(self, handler) -> ArchiveClient:
        client = ArchiveClient(timeout_s=5.0)
        client._http = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)  # type: ignore[attr-defined]
        return client

    def test_download_follows_redirects_and_sends_user_agent(self) -> None:
        seen: list[tuple[str, str | None]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, request.headers.get("user-agent")))
            if request.url.path == "/packages/foo-1.2.0.tar":
                return httpx.Response(302, headers={"location": "/mirror/foo-1.2.0.tar"})
            return httpx.Response(200, content=b"tar-bytes")

        with self._client(handler) as client:
            content = client.download("https://stable.melpa.org/packages/foo-1.2.0.tar")

        self.assertEqual(content, b"tar-bytes")
        self.assertEqual([p for p, _ in seen], ["/packages/foo-1.2.0.tar", "/mirror/foo-1.2.0.tar"])
        self.assertTrue(all(ua and ua.startswith("channelpin/") for _, ua in seen))

    def test_http_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="missing")

        with self._client(handler) as client:
            with self.assertRaises(ArchiveHTTPError) as ctx:
                client.download("https://melpa.org/packages/nope-1.tar")
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.body, "missing")

    def test_transport_error_is_wrapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with self._client(handler) as client:
            with self.assertRaises(ChannelpinError):
                client.download("https://melpa.org/packages/foo-1.tar")


if __name__ == "__main__":
    unittest.main()
