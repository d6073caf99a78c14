from pytest_archon import archrule


def test_primitives_isolation() -> None:
    """
    Primitives (the exception taxonomy) are the lowest level.
    They must not import from adapters, ports or the relay engine.
    """
    (
        archrule("primitives_isolation")
        .match("ledger_relay.primitives*")
        .should_not_import("ledger_relay.adapters*")
        .should_not_import("ledger_relay.ports*")
        .should_not_import("ledger_relay.relay*")
        .check("ledger_relay")
    )


def test_domain_isolation() -> None:
    """
    Domain layer should be self-contained.
    It must not import from adapters, ports, settings or the relay engine.
    """
    (
        archrule("domain_isolation")
        .match("ledger_relay.domain*")
        .should_not_import("ledger_relay.adapters*")
        .should_not_import("ledger_relay.ports*")
        .should_not_import("ledger_relay.relay*")
        .should_not_import("ledger_relay.settings")
        .check("ledger_relay")
    )


def test_ports_layering() -> None:
    """
    Ports (interfaces) should not depend on Adapters (implementations).
    """
    (
        archrule("ports_layering")
        .match("ledger_relay.ports*")
        .should_not_import("ledger_relay.adapters*")
        .check("ledger_relay")
    )


def test_relay_engine_independent_of_adapters() -> None:
    """
    The relay engine talks to ledgers and storage only through ports.
    Adapters are plugins and must never be imported by engine code.
    """
    (
        archrule("relay_adapters_isolation")
        .match("ledger_relay.relay*")
        .match("ledger_relay.settings")
        .match("ledger_relay.instrumentation")
        .match("ledger_relay.correlation")
        .should_not_import("ledger_relay.adapters*")
        .check("ledger_relay")
    )


def test_engine_has_no_database_dependency() -> None:
    """
    Only the SQL adapter may import SQLAlchemy; the engine and the in-memory
    adapters run without a database driver.
    """
    (
        archrule("sqlalchemy_confined_to_sql_adapter")
        .match("ledger_relay.relay*")
        .match("ledger_relay.domain*")
        .match("ledger_relay.ports*")
        .match("ledger_relay.adapters.memory*")
        .should_not_import("sqlalchemy*")
        .check("ledger_relay")
    )
