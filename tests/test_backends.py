import unittest
from webdav4.client import Client
from historysync.clients.base import build_backend, classify_connection_error, join_url
from historysync.clients.code_client import PublicCodeBackend
from historysync.clients.webdav_client import AccountBackend
from historysync.errors import ConfigurationError, NotAuthorized, TransportError
from historysync.models import AccountConfig, CodeConfig
from tests.fakes import FakeDav, FakeRemote


class TestUrls(unittest.TestCase):
    def test_join_url_tolerates_trailing_slash(self):
        self.assertEqual(join_url("https://h/dav", "f.json"), "https://h/dav/f.json")
        self.assertEqual(join_url("https://h/dav/", "f.json"), "https://h/dav/f.json")
        self.assertEqual(join_url("https://h/raw/", "CODE", "f.json"), "https://h/raw/CODE/f.json")

    def test_account_and_code_file_urls(self):
        remote = FakeRemote()
        client = remote.client()
        for base in ("https://dav.example.com/dav", "https://dav.example.com/dav/"):
            backend = build_backend(AccountConfig(url=base, username="u", password="p"), client)
            self.assertIsInstance(backend, AccountBackend)
            self.assertIsInstance(backend.dav, Client)
            self.assertEqual(backend.file_url("xmbox_history.json"), "https://dav.example.com/dav/xmbox_history.json")

            backend = build_backend(CodeConfig(sync_code="ABCD1234", public_base_url=base), client)
            self.assertIsInstance(backend, PublicCodeBackend)
            self.assertEqual(backend.file_url("xmbox_history.json"),
                             "https://dav.example.com/dav/ABCD1234/xmbox_history.json")

    def test_incomplete_config_rejected(self):
        with self.assertRaises(ConfigurationError):
            build_backend(AccountConfig(url="https://h", username="u"), FakeRemote().client())
        with self.assertRaises(ConfigurationError):
            build_backend(CodeConfig(public_base_url="https://h"), FakeRemote().client())


class TestClassification(unittest.TestCase):
    def test_substrings(self):
        cases = {
            "WebDAV list failed: HTTP 401 Unauthorized": "Authentication failed",
            "HTTP 403 Forbidden": "Access denied",
            "HTTP 404 Not Found": "URL not found",
            "ConnectError: [SSL: CERTIFICATE_VERIFY_FAILED]": "SSL certificate error",
            "ReadTimeout: timed out": "Connection timed out",
            "ConnectError: [Errno -2] Name or service not known": "Cannot reach the server",
            "Network is unreachable": "Cannot reach the server",
        }
        for raw, expected in cases.items():
            self.assertTrue(classify_connection_error(raw).startswith(expected), raw)

    def test_generic(self):
        self.assertEqual(classify_connection_error("boom"), "Connection failed: boom")
        self.assertEqual(classify_connection_error(None), "Connection failed: unknown error")


class TestAccountBackend(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.remote = FakeRemote()
        self.backend = AccountBackend(
            AccountConfig(url="https://dav.example.com/dav", username="u", password="p"),
            self.remote.client(),
            dav=FakeDav(self.remote),
        )

    async def test_put_get_exists(self):
        self.assertFalse(await self.backend.exists("a.json"))
        await self.backend.put("a.json", b"[]")
        self.assertTrue(await self.backend.exists("a.json"))
        self.assertEqual(await self.backend.get("a.json"), b"[]")

    async def test_exists_raises_on_server_error(self):
        self.remote.fail("PROPFIND", "/dav/a.json", 500)
        with self.assertRaises(TransportError) as ctx:
            await self.backend.exists("a.json")
        self.assertEqual(ctx.exception.status_code, 500)

    async def test_exists_treats_http_404_as_absent(self):
        self.remote.fail("PROPFIND", "/dav/a.json", 404)
        self.assertFalse(await self.backend.exists("a.json"))

    async def test_get_missing_raises(self):
        with self.assertRaises(TransportError) as ctx:
            await self.backend.get("missing.json")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_ensure_container_creates_missing_directory(self):
        await self.backend.ensure_container()
        self.assertIn(("MKCOL", "/dav/"), self.remote.requests)

        self.remote.requests.clear()
        await self.backend.ensure_container()
        self.assertNotIn("MKCOL", [m for m, _ in self.remote.requests])

    async def test_list_and_connection(self):
        await self.backend.put("a.json", b"{}")
        self.assertEqual(await self.backend.list(), ["a.json"])
        result = await self.backend.test_connection()
        self.assertTrue(result.success)

    async def test_connection_classifies_401(self):
        self.remote.fail("PROPFIND", "/dav/", 401)
        result = await self.backend.test_connection()
        self.assertFalse(result.success)
        self.assertTrue(result.message.startswith("Authentication failed"))


class TestPublicCodeBackend(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.remote = FakeRemote()

    def backend(self, token=None, write_base=None):
        config = CodeConfig(
            sync_code="CODE1234", public_base_url="https://pub.example.com/raw",
            write_token=token, write_base_url=write_base,
        )
        return PublicCodeBackend(config, self.remote.client())

    async def test_put_without_token_not_authorized(self):
        with self.assertRaises(NotAuthorized):
            await self.backend().put("xmbox_history.json", b"[]")
        self.assertEqual(self.remote.requests, [])

    async def test_put_with_token_goes_to_write_endpoint(self):
        backend = self.backend(token="t", write_base="https://api.example.com/store/")
        await backend.put("xmbox_history.json", b"[]")
        self.assertIn(("PUT", "/store/CODE1234/xmbox_history.json"), self.remote.requests)

    async def test_rejected_token_not_authorized(self):
        self.remote.fail("PUT", "/raw/CODE1234/xmbox_history.json", 403)
        with self.assertRaises(NotAuthorized):
            await self.backend(token="bad").put("xmbox_history.json", b"[]")

    async def test_read_without_token(self):
        self.remote.files["/raw/CODE1234/xmbox_history.json"] = b"[]"
        backend = self.backend()
        self.assertTrue(await backend.exists("xmbox_history.json"))
        self.assertEqual(await backend.get("xmbox_history.json"), b"[]")
        self.assertEqual(await backend.list(), ["xmbox_history.json"])

    async def test_ensure_container_is_noop(self):
        await self.backend().ensure_container()
        self.assertEqual(self.remote.requests, [])


if __name__ == '__main__':
    unittest.main()
