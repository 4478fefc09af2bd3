import datetime
from datetime import timedelta

from database import build_engine, build_session_factory, init_schema
from modules.lifecycle import ReportLifecycleManager, VoteApplied
from modules.report_store import ReportStore
from schemas import Category, Location


class DemoClock:
    """Manually advanced clock so the two-hour expiry can be shown instantly."""

    def __init__(self, start: datetime.datetime):
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def main():
    engine = build_engine("sqlite://")
    init_schema(engine)
    store = ReportStore(build_session_factory(engine))

    clock = DemoClock(datetime.datetime(2025, 6, 1, 18, 0, tzinfo=datetime.timezone.utc))
    manager = ReportLifecycleManager(store, clock=clock)

    store.subscribe(lambda: print("  [feed] reports changed"))

    # Bogota, the default map center
    report = manager.submit_report(
        Location(latitude=4.711, longitude=-74.0721),
        Category.VEHICULAR_CONTROL,
        "Están revisando papeles y SOAT",
        "device-alpha",
    )
    print(f"Submitted {report.id} ({report.category.label}) at {report.created_at:%H:%M}")

    clock.advance(minutes=10)
    for token in ("device-bravo", "device-charlie", "device-bravo", "device-delta"):
        result = manager.confirm_report(report.id, token)
        state = "counted" if isinstance(result, VoteApplied) else "already counted"
        current = result.report
        print(f"Confirm from {token}: {state} -> {current.confirmations} ({manager.classify_heat(current).value})")

    manager.add_comment(report.id, "hay 3 agentes", "device-bravo")
    commented = manager.get_report(report.id)
    for c in commented.comments:
        print(f"  #{c.author_token_prefix}: {c.text}")

    clock.advance(hours=1, minutes=49)
    print(f"At {clock.now:%H:%M}: {len(manager.visible_reports())} visible")
    clock.advance(minutes=2)
    print(f"At {clock.now:%H:%M}: {len(manager.visible_reports())} visible")

    engine.dispose()


if __name__ == "__main__":
    main()
