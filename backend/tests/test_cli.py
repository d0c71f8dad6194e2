"""
flask CLI command tests.
"""

from fitsense.extensions import db
from fitsense.models import MemberRecord, Plan, User

from conftest import make_member, make_membership


def test_create_plan_and_list(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["plans", "create", "--name", "Monthly", "--price-cents", "100000"])
    assert result.exit_code == 0
    assert "PASS Created plan: Monthly" in result.output
    assert db.session.query(Plan).filter_by(name="Monthly").one().duration_days == 30

    result = runner.invoke(args=["plans", "create", "--name", "Monthly", "--price-cents", "1"])
    assert result.exit_code == 1
    assert "FAIL" in result.output

    result = runner.invoke(args=["plans", "list"])
    assert "Monthly" in result.output


def test_create_super_admin(app, db_session):
    result = app.test_cli_runner().invoke(args=[
        "system", "create-admin", "--name", "Owner", "--email", "owner@gym.local",
        "--password", "Password123!", "--super",
    ])
    assert result.exit_code == 0
    user = db.session.query(User).filter_by(email="owner@gym.local").one()
    assert user.is_super_admin is True


def test_registry_sync(app, db_session, monthly_plan):
    make_membership(make_member(), monthly_plan)
    result = app.test_cli_runner().invoke(args=["registry", "sync"])
    assert result.exit_code == 0
    assert "created=1" in result.output
    assert db.session.query(MemberRecord).count() == 1


def test_registry_import(app, db_session, tmp_path):
    csv_file = tmp_path / "members.csv"
    csv_file.write_text("name,email,paid\nAsha,asha@example.com,500\n,ghost@example.com,\n", encoding="utf-8")

    result = app.test_cli_runner().invoke(args=["registry", "import", str(csv_file)])

    assert result.exit_code == 0
    assert "imported=1 skipped=1 total=2" in result.output
    assert "WARN" in result.output


def test_expire_memberships(app, db_session, monthly_plan):
    from datetime import timedelta
    from fitsense.time_utils import utcnow
    make_membership(make_member(), monthly_plan, start=utcnow().date() - timedelta(days=45))
    result = app.test_cli_runner().invoke(args=["memberships", "expire"])
    assert "PASS Expired 1 memberships" in result.output
