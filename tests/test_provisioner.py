"""
End-to-end tests of the scan-and-configure engine.

System collaborators are replaced by small fakes; configuration files are
real files under tmp_path so change detection is exercised for real.
"""

import logging
import os
from unittest.mock import MagicMock

import pytest


class FakePackages:
    def __init__(self, apt_present=True):
        self.apt_present = apt_present
        self.installed = []

    def ensure_available(self):
        from time_server.errors import MissingCommandError
        if not self.apt_present:
            raise MissingCommandError("This tool requires 'apt-get' to be installed.")

    def ensure_installed(self, names):
        self.installed.append(set(names))


class FakeServices:
    """systemd double; restarting gpsd makes it manage the configured device."""

    def __init__(self, active=('gpsd.socket', 'chrony.service')):
        self.active = set(active)
        self.restarts = []
        self.gpsd_device = None
        self.defaults_file = None
        self.failures = {}

    def is_active(self, name):
        return name in self.active

    def restart(self, name):
        from time_server.errors import CommandFailedError
        if self.failures.get(name):
            self.failures[name] -= 1
            raise CommandFailedError(f"Failed to restart {name}")
        self.restarts.append(name)
        if name == 'gpsd.socket' and self.defaults_file:
            for line in open(self.defaults_file).read().splitlines():
                if line.startswith('DEVICES='):
                    self.gpsd_device = line.split('"')[1]

    def gpsctl(self, timeout):
        if self.gpsd_device:
            return f"{self.gpsd_device} identified as a u-blox at 9600 baud.\n"
        return None


class FakeProbe:
    def __init__(self, result=None):
        self.result = result
        self.calls = 0

    def probe(self, patterns, baud_rates, sentence_matcher):
        self.calls += 1
        return self.result


class FakeLocator:
    def __init__(self, pulse=None):
        from time_server.interfaces.clock_sources import PulseReference
        self.pulse = pulse or PulseReference.none()
        self.devices = []

    def locate(self, after_device):
        self.devices.append(after_device)
        return self.pulse


@pytest.fixture
def config(tmp_path):
    from time_server.main import load_config

    config = load_config()
    config['chrony']['server_conf'] = str(tmp_path / 'conf.d' / '10-server.conf')
    config['chrony']['gps_conf'] = str(tmp_path / 'conf.d' / '20-gps.conf')
    config['gpsd']['defaults_file'] = str(tmp_path / 'default' / 'gpsd')
    (tmp_path / 'default').mkdir()
    (tmp_path / 'default' / 'gpsd').write_text('DEVICES=""\nGPSD_OPTIONS=""\nUSBAUTO="true"\n')
    return config


@pytest.fixture
def receiver():
    from time_server.interfaces.clock_sources import ProbeResult
    return ProbeResult(device='/dev/ttyACM0', baud_rate=115200, confirmed=True)


def make_provisioner(config, probe=None, locator=None, services=None, packages=None,
                     memory=2 * 1024 ** 3, **kwargs):
    from time_server.engine.provisioner import Provisioner
    from time_server.output.config_store import ConfigStore

    certificates = kwargs.pop('certificates', None) or MagicMock()
    services = services or FakeServices()
    services.defaults_file = config['gpsd']['defaults_file']
    return Provisioner(
        config,
        packages=packages or FakePackages(),
        services=services,
        store=ConfigStore(),
        probe=probe or FakeProbe(),
        locator=locator or FakeLocator(),
        query_fn=services.gpsctl,
        memory_fn=lambda: memory,
        certificates=certificates,
        **kwargs
    )


class TestFirstRun:

    def test_found_receiver_configures_gpsd_and_chrony(self, config, receiver):
        services = FakeServices()
        locator = FakeLocator()
        provisioner = make_provisioner(config, FakeProbe(receiver), locator, services)

        report = provisioner.run()

        assert report.probe == receiver
        assert locator.devices == ['/dev/ttyACM0']
        assert services.restarts == ['gpsd.socket', 'chrony.service']
        assert report.chrony_restarted

        defaults = open(config['gpsd']['defaults_file']).read()
        assert 'DEVICES="/dev/ttyACM0"' in defaults
        assert 'GPSD_OPTIONS="-n -s 115200"' in defaults
        assert 'USBAUTO="true"' in defaults

        gps = open(config['chrony']['gps_conf']).read()
        assert 'refclock SHM 0 refid GPS0 poll 0 filter 3 prefer trust\n' in gps
        assert gps.endswith('hwtimestamp *\n')

        server = open(config['chrony']['server_conf']).read()
        assert server == f"allow\nclientloglimit {1024 ** 3}\n"

    def test_installs_gpsd_and_chrony(self, config):
        packages = FakePackages()
        make_provisioner(config, packages=packages).run()
        assert packages.installed[0] == {'gpsd', 'chrony'}

    def test_pps_pulse_takes_precedence(self, config, receiver):
        from time_server.interfaces.clock_sources import PulseReference

        provisioner = make_provisioner(
            config, FakeProbe(receiver), FakeLocator(PulseReference.pps('/dev/pps0'))
        )
        provisioner.run()

        lines = [l for l in open(config['chrony']['gps_conf']).read().splitlines()
                 if l.startswith('refclock')]
        assert lines == [
            'refclock PPS /dev/pps0 lock GPS0 refid PPS0 poll 0 prefer trust',
            'refclock SHM 0 refid GPS0 poll 0 filter 3 noselect',
        ]

    def test_no_receiver_still_writes_shm_refclock(self, config):
        locator = FakeLocator()
        services = FakeServices()
        report = make_provisioner(config, FakeProbe(None), locator, services).run()

        assert report.probe is None
        assert locator.devices == []
        assert 'gpsd.socket' not in services.restarts
        assert open(config['gpsd']['defaults_file']).read().startswith('DEVICES=""')
        assert 'prefer trust' in open(config['chrony']['gps_conf']).read()

    def test_small_memory_omits_clientloglimit(self, config):
        make_provisioner(config, memory=512 * 1024 ** 2).run()
        assert open(config['chrony']['server_conf']).read() == "allow\n"


class TestIdempotence:

    def test_second_run_writes_nothing(self, config, receiver):
        services = FakeServices()
        probe = FakeProbe(receiver)
        make_provisioner(config, probe, services=services).run()
        assert services.gpsd_device == '/dev/ttyACM0'

        restarts_before = list(services.restarts)
        provisioner = make_provisioner(config, probe, services=services)
        report = provisioner.run()

        assert report.files_written == []
        assert provisioner.store.write_count == 0
        assert not report.chrony_restarted
        assert services.restarts == restarts_before
        # gpsd now reports the device, so the second run does not scan
        assert probe.calls == 1
        assert report.managed_device == '/dev/ttyACM0'

    def test_second_run_without_gpsd_answer_is_also_unchanged(self, config, receiver):
        services = FakeServices()
        make_provisioner(config, FakeProbe(receiver), services=services).run()
        services.gpsd_device = None

        report = make_provisioner(config, FakeProbe(receiver), services=services).run()
        assert report.files_written == []
        assert not report.chrony_restarted

    def test_hardware_change_rewrites(self, config, receiver):
        from time_server.interfaces.clock_sources import PulseReference

        services = FakeServices()
        make_provisioner(config, FakeProbe(receiver), services=services).run()

        report = make_provisioner(
            config, FakeProbe(receiver), FakeLocator(PulseReference.pps('/dev/pps0')),
            services=services,
        ).run()
        assert report.files_written == [config['chrony']['gps_conf']]
        assert report.chrony_restarted


class TestExistingDevice:

    def test_managed_device_skips_scan(self, config):
        services = FakeServices()
        services.gpsd_device = '/dev/ttyAMA0'
        probe = FakeProbe()
        locator = FakeLocator()

        report = make_provisioner(config, probe, locator, services).run()

        assert probe.calls == 0
        assert locator.devices == ['/dev/ttyAMA0']
        assert report.probe.device == '/dev/ttyAMA0'
        assert report.probe.baud_rate is None
        assert 'gpsd.socket' not in services.restarts

    def test_force_scans_anyway_and_rewrites(self, config, receiver):
        services = FakeServices()
        make_provisioner(config, FakeProbe(receiver), services=services).run()

        probe = FakeProbe(receiver)
        report = make_provisioner(config, probe, services=services, force=True).run()

        assert probe.calls == 1
        assert report.managed_device is None
        assert config['chrony']['gps_conf'] in report.files_written
        assert config['gpsd']['defaults_file'] in report.files_written
        assert report.chrony_restarted


class TestFatalPreconditions:

    def test_inactive_gpsd_is_fatal(self, config, receiver):
        from time_server.errors import ServiceInactiveError

        provisioner = make_provisioner(config, FakeProbe(receiver),
                                       services=FakeServices(active=()))
        with pytest.raises(ServiceInactiveError):
            provisioner.run()
        assert not os.path.exists(config['chrony']['gps_conf'])

    def test_missing_apt_is_fatal(self, config):
        from time_server.errors import MissingCommandError

        provisioner = make_provisioner(config, packages=FakePackages(apt_present=False))
        with pytest.raises(MissingCommandError):
            provisioner.run()


class TestRecovery:
    """A fatal error after a file write must not hide the change from the next run."""

    def test_failed_gpsd_restart_is_retried(self, config, receiver):
        from time_server.errors import CommandFailedError

        defaults_before = open(config['gpsd']['defaults_file']).read()
        services = FakeServices()
        services.failures['gpsd.socket'] = 1

        with pytest.raises(CommandFailedError):
            make_provisioner(config, FakeProbe(receiver), services=services).run()
        assert open(config['gpsd']['defaults_file']).read() == defaults_before
        assert services.restarts == []

        report = make_provisioner(config, FakeProbe(receiver), services=services).run()
        assert services.restarts == ['gpsd.socket', 'chrony.service']
        assert report.gpsd_restarted
        assert config['gpsd']['defaults_file'] in report.files_written

    def test_failed_chrony_restart_removes_new_files(self, config, receiver):
        from time_server.errors import CommandFailedError

        services = FakeServices()
        services.failures['chrony.service'] = 1

        with pytest.raises(CommandFailedError):
            make_provisioner(config, FakeProbe(receiver), services=services).run()
        assert not os.path.exists(config['chrony']['gps_conf'])
        assert not os.path.exists(config['chrony']['server_conf'])

        report = make_provisioner(config, FakeProbe(receiver), services=services).run()
        assert report.chrony_restarted
        assert 'chrony.service' in services.restarts
        assert os.path.exists(config['chrony']['gps_conf'])

    def test_failed_chrony_restart_restores_previous_files(self, config, receiver):
        from time_server.errors import CommandFailedError
        from time_server.interfaces.clock_sources import PulseReference

        services = FakeServices()
        make_provisioner(config, FakeProbe(receiver), services=services).run()
        gps_before = open(config['chrony']['gps_conf']).read()

        services.failures['chrony.service'] = 1
        pps = FakeLocator(PulseReference.pps('/dev/pps0'))
        with pytest.raises(CommandFailedError):
            make_provisioner(config, FakeProbe(receiver), pps, services=services).run()
        assert open(config['chrony']['gps_conf']).read() == gps_before

        report = make_provisioner(config, FakeProbe(receiver), pps, services=services).run()
        assert report.files_written == [config['chrony']['gps_conf']]
        assert report.chrony_restarted

    def test_certbot_failure_after_chrony_change(self, config, receiver):
        from time_server.errors import CommandFailedError

        certificates = MagicMock()
        certificates.obtain.side_effect = CommandFailedError("certbot failed")
        services = FakeServices()

        with pytest.raises(CommandFailedError):
            make_provisioner(config, FakeProbe(receiver), services=services,
                             certificates=certificates,
                             domain='ntp.example.com', email='info@example.com').run()
        # chrony already runs the new refclocks before TLS is attempted
        assert services.restarts == ['gpsd.socket', 'chrony.service']
        assert 'refclock SHM 0' in open(config['chrony']['gps_conf']).read()

        report = make_provisioner(config, FakeProbe(receiver), services=services).run()
        assert report.files_written == []
        assert not report.chrony_restarted

    def test_failed_restart_after_tls_keeps_server_file(self, config):
        from time_server.errors import CommandFailedError

        services = FakeServices()
        make_provisioner(config, services=services).run()
        server_before = open(config['chrony']['server_conf']).read()

        certificates = MagicMock()
        certificates.obtain.return_value = TestTls.NTS
        services.failures['chrony.service'] = 1
        tls = dict(certificates=certificates, domain='ntp.example.com', email='info@example.com')
        with pytest.raises(CommandFailedError):
            make_provisioner(config, services=services, **tls).run()
        assert open(config['chrony']['server_conf']).read() == server_before

        report = make_provisioner(config, services=services, **tls).run()
        assert config['chrony']['server_conf'] in report.files_written
        assert report.chrony_restarted


class TestTls:

    NTS = [
        'ntsservercert /etc/chrony/certs/fullchain.pem',
        'ntsserverkey /etc/chrony/certs/privkey.pem',
    ]

    def test_domain_without_email_warns(self, config, caplog):
        certificates = MagicMock()
        provisioner = make_provisioner(config, domain='ntp.example.com',
                                       certificates=certificates)
        with caplog.at_level(logging.WARNING):
            report = provisioner.run()

        certificates.obtain.assert_not_called()
        assert not report.tls_configured
        assert 'both DOMAIN and EMAIL' in caplog.text

    def test_tls_adds_nts_lines(self, config):
        certificates = MagicMock()
        certificates.obtain.return_value = self.NTS
        services = FakeServices()
        provisioner = make_provisioner(
            config, services=services, certificates=certificates,
            domain='ntp.example.com', email='info@example.com', token='tok',
        )
        report = provisioner.run()

        certificates.obtain.assert_called_once_with('ntp.example.com', 'info@example.com', 'tok')
        server = open(config['chrony']['server_conf']).read()
        assert server.endswith("\n".join(self.NTS) + "\n")
        assert server.startswith("allow\n")
        assert report.tls_configured
        assert services.restarts.count('chrony.service') == 2

    def test_nts_lines_survive_later_runs_without_tls(self, config):
        certificates = MagicMock()
        certificates.obtain.return_value = self.NTS
        make_provisioner(config, certificates=certificates,
                         domain='ntp.example.com', email='info@example.com').run()

        report = make_provisioner(config).run()
        assert config['chrony']['server_conf'] not in report.files_written
        assert self.NTS[0] in open(config['chrony']['server_conf']).read()

    def test_custom_chrony_unit_reaches_deploy_hook(self, config):
        from time_server.engine.provisioner import Provisioner
        from time_server.system.certificates import render_deploy_hook

        config['chrony']['service'] = 'chronyd.service'
        provisioner = Provisioner(config)
        certificates = provisioner.certificates

        assert certificates.service == 'chronyd.service'
        hook = render_deploy_hook(certificates.certs_dir, certificates.group, certificates.service)
        assert hook.rstrip().endswith('systemctl restart chronyd.service')
