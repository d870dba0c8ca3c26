import toml
import caldav
import vobject
import logging

from ics_event import DEFAULT_TZID, EventRecord, ICSError, MissingStartTimeError


CONFIG_PATH = "config.toml"


def build_event(config):
    return EventRecord(config.get("event", {}), tzid=config.get("tzid", DEFAULT_TZID))


def write_ics(record, path, charset="utf-8"):
    if "dtstart" not in record.properties:
        raise MissingStartTimeError()
    # newline="" keeps the CRLF separators as rendered
    with open(path, "w", encoding=charset, newline="") as f:
        f.write(record.render())
    logging.info(f"Wrote event to {path}")


def validate_ics(text):
    try:
        vcal = vobject.readOne(text)
        return vcal.vevent
    except Exception as ex:
        raise ICSError(f"Generated calendar does not parse: {ex}") from ex


def publish(record, client, dest_calendar):
    calendars = client.principal().calendars()
    cal_map = {c.name: c for c in calendars}
    dest_cal = cal_map.get(dest_calendar)
    if not dest_cal:
        raise ICSError(f"Destination calendar '{dest_calendar}' not found.")

    ical = record.render()
    vevent = validate_ics(ical)
    summary = getattr(vevent, "summary", None) and vevent.summary.value
    logging.info(f"Adding event: {summary} to {dest_calendar}")
    dest_cal.save_event(ical, no_overwrite=True)


def main(config_path=CONFIG_PATH):
    config = toml.load(config_path)
    record = build_event(config)
    write_ics(record, config.get("output", "ical.ics"), config.get("charset", "utf-8"))

    dest_calendar = config.get("dest_calendar")
    server = config.get("caldav")
    if not dest_calendar or not server:
        logging.info("No destination calendar configured, skipping upload.")
        return
    client = caldav.DAVClient(url=server["url"], username=server["username"], password=server["password"])
    publish(record, client, dest_calendar)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()
