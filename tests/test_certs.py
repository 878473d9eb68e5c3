"""Tests for the certificate lifecycle."""

from datetime import timedelta

import pytest

from conftest import NOW, FakeAcme, FakeProxy, FakeVerifier, write_certificate, write_renewal_config
from proxyvisor.certs import CertificateManager, CertState, days_until
from proxyvisor.errors import IssuanceFailure, RenewalFailure, VerificationFailure
from proxyvisor.verify import VerificationStatus


@pytest.fixture
def config(make_config):
    return make_config()


def manager(config, acme=None, verifier=None, proxy=None):
    return CertificateManager(
        config,
        acme=acme or FakeAcme(),
        verifier=verifier or FakeVerifier(),
        proxy=proxy or FakeProxy(),
    )


def test_days_until_rounds_down():
    assert days_until(NOW + timedelta(days=31), NOW) == 31
    assert days_until(NOW + timedelta(days=30, hours=23), NOW) == 30
    assert days_until(NOW - timedelta(hours=1), NOW) == -1


def test_absent(config):
    status = manager(config).evaluate(NOW)

    assert status.state is CertState.ABSENT


def test_valid_at_31_days(config):
    write_certificate(config.certificate_path, NOW + timedelta(days=31))
    write_renewal_config(config.renewal_config_path)

    status = manager(config).evaluate(NOW)

    assert status.state is CertState.VALID
    assert status.days_left == 31
    assert status.authenticator == "dns-cloudflare"


def test_expiring_soon_at_29_days(config):
    write_certificate(config.certificate_path, NOW + timedelta(days=29))
    write_renewal_config(config.renewal_config_path)

    status = manager(config).evaluate(NOW)

    assert status.state is CertState.EXPIRING_SOON
    assert status.days_left == 29


def test_threshold_is_inclusive(config):
    write_certificate(config.certificate_path, NOW + timedelta(days=30))

    assert manager(config).evaluate(NOW).state is CertState.EXPIRING_SOON


def test_missing_renewal_metadata_does_not_force_reissue(config):
    write_certificate(config.certificate_path, NOW + timedelta(days=60))

    assert manager(config).evaluate(NOW).state is CertState.VALID


def test_wrong_authenticator(config):
    write_certificate(config.certificate_path, NOW + timedelta(days=60))
    write_renewal_config(config.renewal_config_path, authenticator="webroot")

    status = manager(config).evaluate(NOW)

    assert status.state is CertState.INVALID_AUTHENTICATOR
    assert status.authenticator == "webroot"


def test_unreadable_certificate_is_absent(config):
    config.certificate_path.parent.mkdir(parents=True)
    config.certificate_path.write_text("not a certificate")

    assert manager(config).evaluate(NOW).state is CertState.ABSENT


async def test_check_valid_does_nothing(config):
    write_certificate(config.certificate_path, NOW + timedelta(days=31))
    acme, proxy = FakeAcme(), FakeProxy()

    status = await manager(config, acme=acme, proxy=proxy).check(now=NOW)

    assert status.state is CertState.VALID
    assert acme.calls == []
    assert proxy.reloads == 0


async def test_check_expiring_renews_and_reloads(config):
    write_certificate(config.certificate_path, NOW + timedelta(days=29))
    acme, proxy = FakeAcme(), FakeProxy()

    status = await manager(config, acme=acme, proxy=proxy).check(now=NOW)

    assert status.state is CertState.EXPIRING_SOON
    assert acme.calls == [("renew",)]
    assert proxy.reloads == 1


async def test_check_expiring_without_reload(config):
    write_certificate(config.certificate_path, NOW + timedelta(days=29))
    acme, proxy = FakeAcme(), FakeProxy()

    await manager(config, acme=acme, proxy=proxy).check(reload_proxy=False, now=NOW)

    assert acme.calls == [("renew",)]
    assert proxy.reloads == 0


async def test_check_absent_issues(config):
    acme, verifier = FakeAcme(), FakeVerifier()
    proxy = FakeProxy()

    status = await manager(config, acme=acme, verifier=verifier, proxy=proxy).check(now=NOW)

    assert status.state is CertState.ABSENT
    assert verifier.calls == [("example.com", None)]
    assert acme.calls == [("certonly", "admin@example.com", "example.com")]
    assert proxy.reloads == 1


async def test_startup_issuance_does_not_reload(config):
    proxy = FakeProxy()

    await manager(config, proxy=proxy).check(reload_proxy=False, now=NOW)

    assert proxy.reloads == 0


async def test_issue_uses_floating_ip(make_config):
    config = make_config(floating_ip="1.2.3.4")
    verifier = FakeVerifier()

    await manager(config, verifier=verifier).issue()

    assert verifier.calls == [("example.com", "1.2.3.4")]


async def test_invalid_authenticator_is_purged_then_issued(config):
    write_certificate(config.certificate_path, NOW + timedelta(days=60))
    write_renewal_config(config.renewal_config_path, authenticator="standalone")
    acme, proxy = FakeAcme(), FakeProxy()

    status = await manager(config, acme=acme, proxy=proxy).check(now=NOW)

    assert status.state is CertState.INVALID_AUTHENTICATOR
    assert not config.renewal_config_path.exists()
    assert acme.calls == [("certonly", "admin@example.com", "example.com")]
    assert proxy.reloads == 1


async def test_valid_renewal_metadata_is_kept(config):
    write_renewal_config(config.renewal_config_path)

    await manager(config).issue()

    assert config.renewal_config_path.exists()


@pytest.mark.parametrize(
    "status", [VerificationStatus.MISMATCH, VerificationStatus.LOOKUP_FAILED]
)
async def test_verification_failure_blocks_issuance(config, status):
    acme = FakeAcme()

    with pytest.raises(VerificationFailure) as excinfo:
        await manager(config, acme=acme, verifier=FakeVerifier(status)).check(now=NOW)

    assert excinfo.value.result.status is status
    assert excinfo.value.suggestion
    assert acme.calls == []


async def test_issuance_failure(config):
    with pytest.raises(IssuanceFailure):
        await manager(config, acme=FakeAcme(ok=False)).check(now=NOW)

    assert manager(config).evaluate(NOW).state is CertState.ABSENT


async def test_renewal_failure_does_not_reload(config):
    write_certificate(config.certificate_path, NOW + timedelta(days=10))
    proxy = FakeProxy()

    with pytest.raises(RenewalFailure):
        await manager(config, acme=FakeAcme(ok=False), proxy=proxy).check(now=NOW)

    assert proxy.reloads == 0


async def test_reload_failure_after_renewal_is_not_fatal(config):
    write_certificate(config.certificate_path, NOW + timedelta(days=10))
    proxy = FakeProxy(reload_ok=False)

    await manager(config, proxy=proxy).renew()

    assert proxy.reloads == 1
