import unittest
from unittest.mock import patch

from tripledger import dependencies
from tripledger.config import Settings
from tripledger.db import DbClient
from tripledger.storage import InMemoryStorageClient


class DependencyWiringTests(unittest.TestCase):
    def setUp(self):
        dependencies.reset_clients()
        self.addCleanup(dependencies.reset_clients)

    @patch("tripledger.dependencies.get_settings")
    def test_in_memory_backends_are_singletons(self, mock_settings):
        mock_settings.return_value = Settings(database_url=None, aws_access_key_id=None)
        db = dependencies.get_db_client()
        storage = dependencies.get_storage_client()
        self.assertIsInstance(db, DbClient)
        self.assertIsInstance(storage, InMemoryStorageClient)
        self.assertIs(dependencies.get_db_client(), db)
        self.assertIs(dependencies.get_storage_client(), storage)

    @patch("tripledger.dependencies.S3StorageClient")
    @patch("tripledger.dependencies.get_settings")
    def test_s3_storage_when_credentials_present(self, mock_settings, mock_s3):
        mock_settings.return_value = Settings(
            aws_access_key_id="key",
            aws_secret_access_key="secret",
            s3_bucket="receipts",
            s3_region="eu-central-1",
        )
        storage = dependencies.get_storage_client()
        self.assertIs(storage, mock_s3.return_value)
        mock_s3.assert_called_once_with(
            bucket="receipts",
            access_key_id="key",
            secret_access_key="secret",
            region="eu-central-1",
            endpoint=None,
        )
        mock_s3.return_value.ensure_bucket.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
