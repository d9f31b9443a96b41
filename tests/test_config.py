import os
import unittest
from unittest.mock import patch

from portal.config import Config, _bool_env, _int_env


class ConfigTest(unittest.TestCase):
    def test_production_requires_database_url(self) -> None:
        with patch.dict(os.environ, {"FLASK_ENV": "production"}):
            with patch.object(Config, "DATABASE_URL", None):
                with self.assertRaises(RuntimeError):
                    Config()

    def test_production_rejects_default_secret(self) -> None:
        with patch.dict(os.environ, {"FLASK_ENV": "production"}):
            with patch.object(Config, "DATABASE_URL", "postgresql://db/compras"), patch.object(
                Config, "SECRET_KEY", "dev-secret-portal-compras"
            ):
                with self.assertRaises(RuntimeError):
                    Config()

    def test_development_accepts_defaults(self) -> None:
        with patch.dict(os.environ, {"FLASK_ENV": "development"}):
            Config()

    def test_env_helpers(self) -> None:
        with patch.dict(os.environ, {"PC_FLAG": "yes", "PC_COUNT": "5", "PC_BAD": "many"}):
            self.assertTrue(_bool_env("PC_FLAG", False))
            self.assertFalse(_bool_env("PC_MISSING", False))
            self.assertEqual(_int_env("PC_COUNT", 3), 5)
            self.assertEqual(_int_env("PC_BAD", 3), 3)


if __name__ == "__main__":
    unittest.main()
