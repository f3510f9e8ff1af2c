import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from crm_assistant.executor import (
    ExecutionError,
    QueryRejected,
    TenantBindingError,
    TenantContext,
    bind_tenant_placeholder,
    execute_query,
)
from crm_assistant.sql_guard import ReasonCode

NAMES_SQL = (
    "SELECT first_name FROM crm_prospects "
    "WHERE organization_id = $1 ORDER BY first_name LIMIT 10"
)


def test_rows_are_scoped_to_the_bound_tenant(db_session, tenant_a):
    rows = execute_query(db_session, NAMES_SQL, tenant_a)
    assert rows == [{"first_name": "Claire"}, {"first_name": "Denis"}, {"first_name": "Emma"}]

    rows_b = execute_query(db_session, NAMES_SQL, TenantContext(organization_id="org-b"))
    assert rows_b == [{"first_name": "Fabien"}]


def test_unknown_tenant_sees_nothing(db_session):
    assert execute_query(db_session, NAMES_SQL, TenantContext(organization_id="org-z")) == []


def test_max_rows_caps_the_result(db_session, tenant_a):
    rows = execute_query(db_session, NAMES_SQL, tenant_a, max_rows=2)
    assert len(rows) == 2


def test_count_and_join(db_session, tenant_a):
    sql = (
        "SELECT COUNT(*) AS total FROM crm_prospects "
        "WHERE organization_id = $1 AND qualification = 'chaud' LIMIT 1"
    )
    assert execute_query(db_session, sql, tenant_a) == [{"total": 2}]

    sql = (
        "SELECT p.first_name AS prenom, u.full_name AS conseiller FROM crm_prospects p "
        "JOIN users u ON u.id = p.assigned_to AND u.organization_id = $1 "
        "WHERE p.organization_id = $1 LIMIT 10"
    )
    assert execute_query(db_session, sql, tenant_a) == [
        {"prenom": "Claire", "conseiller": "Alice Martin"}
    ]


def test_unsafe_query_is_refused_before_running(db_session, tenant_a):
    with pytest.raises(QueryRejected) as exc:
        execute_query(db_session, "SELECT * FROM crm_prospects LIMIT 10", tenant_a)
    assert exc.value.verdict.reason == ReasonCode.MISSING_TENANT_SCOPE
    assert isinstance(exc.value, ExecutionError)


def test_tautology_is_refused(db_session, tenant_a):
    with pytest.raises(QueryRejected) as exc:
        execute_query(
            db_session,
            "SELECT * FROM crm_prospects WHERE organization_id = $1 OR 1=1 LIMIT 10",
            tenant_a,
        )
    assert exc.value.verdict.reason == ReasonCode.SUSPECT_INJECTION_SHAPE


def test_driver_error_becomes_execution_error(db_session, tenant_a):
    sql = "SELECT coluna_inexistente FROM crm_prospects WHERE organization_id = $1 LIMIT 5"
    with pytest.raises(ExecutionError) as exc:
        execute_query(db_session, sql, tenant_a)
    assert "coluna_inexistente" not in str(exc.value)


def test_colon_inside_literal_is_not_a_bind(db_session, tenant_a):
    sql = (
        "SELECT first_name FROM crm_prospects "
        "WHERE organization_id = $1 AND notes = 'rappel 10:30' LIMIT 5"
    )
    assert execute_query(db_session, sql, tenant_a) == [{"first_name": "Emma"}]

    sql = (
        "SELECT first_name FROM crm_prospects "
        "WHERE organization_id = $1 AND notes <> ' :x' ORDER BY first_name LIMIT 5"
    )
    assert [r["first_name"] for r in execute_query(db_session, sql, tenant_a)] == ["Emma"]


def test_bind_tenant_placeholder():
    sql = "SELECT a FROM t WHERE organization_id = $1 AND b = ' :x' AND c = '$1'"
    assert bind_tenant_placeholder(sql) == (
        "SELECT a FROM t WHERE organization_id = :organization_id AND b = ' \\:x' AND c = '$1'"
    )


def test_placeholder_with_cast_becomes_cast_of_the_bind():
    sql = "SELECT a FROM t WHERE organization_id = $1::uuid AND b = '$1::text'"
    assert bind_tenant_placeholder(sql) == (
        "SELECT a FROM t WHERE organization_id = CAST(:organization_id AS uuid) "
        "AND b = '$1::text'"
    )


def test_cast_placeholder_runs(db_session, tenant_a):
    sql = (
        "SELECT p.first_name FROM crm_prospects p "
        "WHERE p.organization_id = $1::text ORDER BY 1 LIMIT 10"
    )
    rows = execute_query(db_session, sql, tenant_a)
    assert [r["first_name"] for r in rows] == ["Claire", "Denis", "Emma"]


def test_placeholder_only_inside_literal_is_a_binding_error():
    with pytest.raises(TenantBindingError):
        bind_tenant_placeholder("SELECT a FROM t WHERE notes = '$1'")


def test_engine_is_read_only(engine):
    with engine.connect() as conn:
        with pytest.raises(OperationalError):
            conn.execute(text("DELETE FROM crm_prospects"))


def test_tenant_context_rejects_blank_id():
    with pytest.raises(ValueError):
        TenantContext(organization_id="  ")
