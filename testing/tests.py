from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase, override_settings


class BookingScenarioRunnerTests(TestCase):
    @override_settings(ALLOW_TEST_SCENARIOS=False)
    def test_refuses_when_disabled(self):
        with self.assertRaises(CommandError):
            call_command("run_booking_scenarios", stdout=StringIO())

    @override_settings(ALLOW_TEST_SCENARIOS=True)
    def test_all_scenarios_pass(self):
        out = StringIO()
        call_command("run_booking_scenarios", stdout=out)
        self.assertIn("All requested scenarios passed.", out.getvalue())

    @override_settings(ALLOW_TEST_SCENARIOS=True)
    def test_unknown_scenario(self):
        with self.assertRaises(CommandError):
            call_command("run_booking_scenarios", scenario="nope", stdout=StringIO())
