"""Tests for the concierge command line entry point."""

import os
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import concierge
from concierge_settings import RepositorySettings, Settings, SlackBotSettings


def make_settings(slack_token=None):
    return Settings(
        repositories={'owner/repo': RepositorySettings(name='owner/repo', github_token='token')},
        slack_bot=SlackBotSettings(token=slack_token),
    )


def make_summary(**overrides):
    summary = {
        'repositories_processed': 1,
        'repositories_failed': [],
        'pull_requests_checked': 2,
        'comments_posted': 1,
        'commented_pull_requests': [{
            'repository': 'owner/repo',
            'number': 7,
            'title': 'Add feature',
            'variant': 'initial_stale_pull_request',
        }],
    }
    summary.update(overrides)
    return summary


class TestMain(unittest.TestCase):
    """Tests for main function."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = os.path.join(self.temp_dir, 'config.yaml')

    def tearDown(self):
        if os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir)

    def write_config(self, text):
        with open(self.config_path, 'w') as f:
            f.write(text)

    def test_missing_config_file(self):
        self.assertEqual(concierge.main(['stale-pull-requests', '-c', 'nonexistent.yaml']), 1)

    def test_empty_config_file(self):
        self.write_config('')

        self.assertEqual(concierge.main(['stale-pull-requests', '-c', self.config_path]), 1)

    def test_invalid_yaml(self):
        self.write_config('repositories: [unclosed\n')

        self.assertEqual(concierge.main(['stale-pull-requests', '-c', self.config_path]), 1)

    def test_invalid_template(self):
        self.write_config(
            "repositories:\n"
            "  owner/repo:\n"
            "    github_token: token\n"
            "    initial_stale_pull_request_template: '{% if %}'\n"
        )

        self.assertEqual(concierge.main(['stale-pull-requests', '-c', self.config_path]), 1)

    def test_config_is_a_list(self):
        self.write_config('- a\n- b\n')

        self.assertEqual(
            concierge.main(['stale-pull-requests', '-c', self.config_path, '--no-refresh', '--dry-run']),
            1
        )

    def test_slack_bot_section_is_a_string(self):
        self.write_config(
            "slack_bot: oops\n"
            "repositories:\n"
            "  owner/repo:\n"
            "    github_token: token\n"
        )

        self.assertEqual(
            concierge.main(['stale-pull-requests', '-c', self.config_path, '--no-refresh', '--dry-run']),
            1
        )

    def test_unknown_job(self):
        with self.assertRaises(SystemExit):
            concierge.main(['clean-the-kitchen'])

    @patch.object(concierge, 'load_settings')
    def test_runs_job_with_flags(self, mock_load_settings):
        settings = make_settings()
        mock_load_settings.return_value = settings
        job = MagicMock(return_value=0)

        with patch.dict(concierge.JOBS, {'stale-pull-requests': job}):
            result = concierge.main([
                'stale-pull-requests', '-c', self.config_path, '--dry-run', '--no-refresh'
            ])

        self.assertEqual(result, 0)
        mock_load_settings.assert_called_once_with(self.config_path)
        job.assert_called_once_with(settings, dry_run=True, refresh=False)

    @patch.object(concierge, 'load_settings')
    def test_job_exception_returns_error(self, mock_load_settings):
        mock_load_settings.return_value = make_settings()
        job = MagicMock(side_effect=RuntimeError('boom'))

        with patch.dict(concierge.JOBS, {'weekly-stats': job}):
            result = concierge.main(['weekly-stats', '-c', self.config_path])

        self.assertEqual(result, 1)

    @patch.object(concierge, 'load_settings')
    def test_slack_jobs_ignore_refresh_flag(self, mock_load_settings):
        settings = make_settings()
        mock_load_settings.return_value = settings
        job = MagicMock(return_value=0)

        with patch.dict(concierge.JOBS, {'release-reminders': job}):
            result = concierge.main(['release-reminders', '-c', self.config_path, '--no-refresh'])

        self.assertEqual(result, 0)
        job.assert_called_once_with(settings, dry_run=False)


class TestRunStalePullRequests(unittest.TestCase):
    """Tests for run_stale_pull_requests function."""

    @patch.object(concierge, 'bump_stale_pull_requests')
    @patch.object(concierge, 'refresh_repository_settings')
    def test_refreshes_before_bumping(self, mock_refresh, mock_bump):
        settings = make_settings()
        refreshed = make_settings()
        mock_refresh.return_value = refreshed
        mock_bump.return_value = make_summary()

        result = concierge.run_stale_pull_requests(settings, dry_run=True)

        self.assertEqual(result, 0)
        mock_refresh.assert_called_once_with(settings)
        mock_bump.assert_called_once_with(refreshed, dry_run=True)

    @patch.object(concierge, 'bump_stale_pull_requests')
    @patch.object(concierge, 'refresh_repository_settings')
    def test_no_refresh(self, mock_refresh, mock_bump):
        settings = make_settings()
        mock_bump.return_value = make_summary(repositories_failed=['owner/broken'])

        result = concierge.run_stale_pull_requests(settings, refresh=False)

        self.assertEqual(result, 0)
        mock_refresh.assert_not_called()
        mock_bump.assert_called_once_with(settings, dry_run=False)


class TestSlackJobs(unittest.TestCase):
    """Tests for the Slack jobs."""

    def test_release_reminders_skipped_without_token(self):
        self.assertEqual(concierge.run_release_reminders(make_settings()), 0)

    def test_weekly_stats_skipped_without_token(self):
        self.assertEqual(concierge.run_weekly_stats(make_settings()), 0)

    @patch.object(concierge, 'SlackBot')
    def test_start_failure_returns_error(self, mock_bot_class):
        mock_bot_class.return_value.start.return_value = False

        self.assertEqual(concierge.run_weekly_stats(make_settings('xoxb-token')), 1)
        self.assertEqual(concierge.run_release_reminders(make_settings('xoxb-token')), 1)

    @patch.object(concierge, 'SlackBot')
    def test_weekly_stats(self, mock_bot_class):
        bot = mock_bot_class.return_value
        bot.start.return_value = True
        bot.send_weekly_stats.return_value = True
        settings = make_settings('xoxb-token')

        self.assertEqual(concierge.run_weekly_stats(settings, dry_run=True), 0)
        mock_bot_class.assert_called_once_with(settings, dry_run=True)

    @patch.object(concierge, 'SlackBot')
    def test_weekly_stats_unknown_channel_is_not_an_error(self, mock_bot_class):
        bot = mock_bot_class.return_value
        bot.start.return_value = True
        bot.send_weekly_stats.return_value = False

        self.assertEqual(concierge.run_weekly_stats(make_settings('xoxb-token')), 0)
        bot.send_weekly_stats.assert_called_once_with()

    @patch.object(concierge, 'SlackBot')
    def test_release_reminders(self, mock_bot_class):
        bot = mock_bot_class.return_value
        bot.start.return_value = True
        bot.send_release_reminders.return_value = {
            'users_scheduled': 2,
            'reminders_sent': 1,
            'users_unresolved': ['erin'],
            'users_failed': [],
            'reminded_users': [{'user': 'alice', 'variant': 'release_reminder'}],
        }

        self.assertEqual(concierge.run_release_reminders(make_settings('xoxb-token')), 0)
        bot.send_release_reminders.assert_called_once_with()


if __name__ == '__main__':
    unittest.main()
