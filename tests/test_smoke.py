def test_import_app():
    import app.main  # noqa: F401
    import app.tasks.dispatch_tasks  # noqa: F401
    import app.tasks.maintenance_tasks  # noqa: F401
    import app.tasks.status_consumer  # noqa: F401


def test_celery_registers_pipeline_tasks():
    from app.core.celery_app import celery
    import app.tasks.dispatch_tasks  # noqa: F401
    import app.tasks.maintenance_tasks  # noqa: F401

    names = set(celery.tasks.keys())
    for name in (
        "app.tasks.dispatch_tasks.verify_schedules",
        "app.tasks.dispatch_tasks.send_schedule",
        "app.tasks.dispatch_tasks.dispatch_shipment",
        "app.tasks.maintenance_tasks.cleanup_finished_jobs",
    ):
        assert name in names


def test_seed_is_idempotent(db, capsys):
    from app.models.tables import Connection, Tenant
    from app.util.ids import seed

    seed()
    seed()

    out = capsys.readouterr().out.split()
    assert out[0] == out[1]
    assert db.query(Tenant).filter(Tenant.name == "seed-tenant").count() == 1
    assert db.query(Connection).filter(Connection.tenant_id == out[0], Connection.is_default.is_(True)).count() == 1
