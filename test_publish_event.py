import os
import tempfile
import unittest
from unittest.mock import MagicMock, patch
from ics_event import EventRecord, ICSError, MissingStartTimeError
import publish_event


class MockCalendar:
    def __init__(self, name):
        self.name = name
        self.saved = []

    def save_event(self, ical, no_overwrite=False):
        self.saved.append((ical, no_overwrite))


class MockPrincipal:
    def __init__(self, calendars):
        self._calendars = calendars

    def calendars(self):
        return self._calendars


class MockDAVClient:
    def __init__(self, calendars):
        self._principal = MockPrincipal(calendars)

    def principal(self):
        return self._principal


CONFIG_TEMPLATE = """
output = "{output}"
tzid = "America/Mexico_City"
{dest}

[caldav]
url = "https://caldav.example.com/"
username = "user"
password = "secret"

[event]
summary = "Launch, v2"
dtstart = "2017-02-08 10:00:00"
dtend = "2017-02-08 10:00:00 + 1 hour"
location = "HQ"
alarm = "15M"
"""


class TestPublishEvent(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.output = os.path.join(self.tmpdir.name, "launch.ics")

    def write_config(self, dest=""):
        path = os.path.join(self.tmpdir.name, "config.toml")
        with open(path, "w") as f:
            f.write(CONFIG_TEMPLATE.format(output=self.output.replace("\\", "/"), dest=dest))
        return path

    def test_build_event_from_config(self):
        record = publish_event.build_event({"event": {"summary": "A;B", "foo": "x"}})
        self.assertEqual(record.properties, {"summary": "A\\;B"})
        self.assertEqual(record.tzid, "America/Mexico_City")

    def test_write_ics_keeps_crlf(self):
        record = EventRecord({"summary": "Launch", "dtstart": "now"})
        publish_event.write_ics(record, self.output)
        with open(self.output, "rb") as f:
            data = f.read()
        self.assertTrue(data.startswith(b"BEGIN:VCALENDAR\r\nVERSION:2.0\r\n"))
        self.assertTrue(data.endswith(b"END:VEVENT\r\nEND:VCALENDAR"))

    def test_write_ics_requires_start(self):
        with self.assertRaises(MissingStartTimeError):
            publish_event.write_ics(EventRecord({"summary": "Launch"}), self.output)
        self.assertFalse(os.path.exists(self.output))

    def test_validate_ics(self):
        record = EventRecord({"summary": "Launch", "location": "HQ", "url": "https://example.com"})
        vevent = publish_event.validate_ics(record.render())
        self.assertEqual(vevent.summary.value, "Launch")

    def test_validate_ics_rejects_garbage(self):
        with self.assertRaises(ICSError):
            publish_event.validate_ics("not a calendar")

    def test_publish(self):
        dest = MockCalendar("Events")
        client = MockDAVClient([MockCalendar("Work"), dest])
        record = EventRecord({"summary": "Launch", "dtstart": "now"})
        with patch.object(publish_event, "validate_ics") as validate:
            publish_event.publish(record, client, "Events")
        validate.assert_called_once()
        self.assertEqual(len(dest.saved), 1)
        ical, no_overwrite = dest.saved[0]
        self.assertIn("SUMMARY:Launch", ical)
        self.assertTrue(no_overwrite)

    def test_publish_missing_calendar(self):
        client = MockDAVClient([MockCalendar("Work")])
        with self.assertRaises(ICSError):
            publish_event.publish(EventRecord({"dtstart": "now"}), client, "Events")

    def test_main_writes_file_without_upload(self):
        path = self.write_config()
        with patch("publish_event.caldav.DAVClient") as dav_client:
            publish_event.main(path)
        dav_client.assert_not_called()
        with open(self.output, "rb") as f:
            text = f.read().decode("utf-8")
        lines = text.split("\r\n")
        self.assertIn("SUMMARY:Launch\\, v2", lines)
        self.assertIn("DTSTART;TZID=America/Mexico_City:20170208T100000", lines)
        self.assertIn("DTEND;TZID=America/Mexico_City:20170208T110000", lines)
        self.assertIn("TRIGGER:-PT15M", lines)

    def test_main_uploads_to_destination(self):
        path = self.write_config(dest='dest_calendar = "Events"')
        dest = MockCalendar("Events")
        client = MockDAVClient([dest])
        with patch("publish_event.caldav.DAVClient", return_value=client) as dav_client, \
                patch.object(publish_event, "validate_ics", return_value=MagicMock()):
            publish_event.main(path)
        dav_client.assert_called_once_with(
            url="https://caldav.example.com/", username="user", password="secret"
        )
        self.assertEqual(len(dest.saved), 1)


if __name__ == "__main__":
    unittest.main()
