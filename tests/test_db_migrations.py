import os
import unittest

from portal import create_app
from portal.config import Config
from portal.db import close_db
from portal.db_migrations import to_sqlalchemy_url
from tests.helpers.temp_db import TempDbSandbox


class DbMigrationsTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="pc_migrations")
        self._prev_env = os.environ.get("FLASK_ENV")
        os.environ["FLASK_ENV"] = "development"

    def tearDown(self) -> None:
        if self._prev_env is None:
            os.environ.pop("FLASK_ENV", None)
        else:
            os.environ["FLASK_ENV"] = self._prev_env
        self._temp_db.cleanup()

    def _build_app(self, *, testing: bool, db_auto_init: bool):
        return create_app(self._temp_db.make_config(Config, TESTING=testing, DB_AUTO_INIT=db_auto_init))

    def test_schema_not_created_by_default(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        with app.app_context():
            close_db()

        self.assertFalse(self._temp_db.table_exists("orders"))
        self.assertEqual(app.test_client().get("/health").get_json()["status"], "degraded")

    def test_schema_created_with_explicit_dev_flag(self) -> None:
        app = self._build_app(testing=False, db_auto_init=True)
        with app.app_context():
            close_db()

        self.assertTrue(self._temp_db.table_exists("orders"))
        self.assertTrue(self._temp_db.table_exists("quote_revisions"))

    def test_auto_init_is_ignored_outside_development(self) -> None:
        os.environ["FLASK_ENV"] = "staging"
        self._build_app(testing=False, db_auto_init=True)
        self.assertFalse(self._temp_db.table_exists("orders"))

    def test_flask_db_upgrade_and_downgrade(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        runner = app.test_cli_runner()

        upgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(upgrade_result.exit_code, 0, msg=upgrade_result.output)
        self.assertTrue(self._temp_db.table_exists("orders"))
        self.assertTrue(self._temp_db.table_exists("quote_revisions"))

        downgrade_result = runner.invoke(args=["db", "downgrade", "base"])
        self.assertEqual(downgrade_result.exit_code, 0, msg=downgrade_result.output)
        self.assertFalse(self._temp_db.table_exists("orders"))
        self.assertFalse(self._temp_db.table_exists("quote_revisions"))

        reupgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(reupgrade_result.exit_code, 0, msg=reupgrade_result.output)
        self.assertTrue(self._temp_db.table_exists("orders"))

    def test_flask_db_bootstrap(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        result = app.test_cli_runner().invoke(args=["db", "bootstrap"])

        self.assertEqual(result.exit_code, 0, msg=result.output)
        self.assertTrue(self._temp_db.table_exists("quote_revisions"))


class SqlAlchemyUrlTest(unittest.TestCase):
    def test_urls_are_normalized(self) -> None:
        self.assertEqual(to_sqlalchemy_url("postgres://u:p@db/compras"), "postgresql://u:p@db/compras")
        self.assertEqual(to_sqlalchemy_url("sqlite:///tmp/x.db"), "sqlite:///tmp/x.db")
        self.assertTrue(to_sqlalchemy_url("relative/portal.db").startswith("sqlite:///"))
        with self.assertRaises(RuntimeError):
            to_sqlalchemy_url("  ")


if __name__ == "__main__":
    unittest.main()
