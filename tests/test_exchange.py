"""Tests for the Exchange Online drivers and the PowerShell runner."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from provisioner.config import ExchangeConfig
from provisioner.drivers.base import (
    DuplicateResourceError,
    PermanentDriverError,
    ResourceNotFoundError,
    TransientDriverError,
)
from provisioner.drivers.exchange import (
    DistributionGroupDriver,
    MailEnabledSecurityGroupDriver,
    PowerShellRunner,
    classify_error,
    ps_quote,
)
from provisioner.models import RemoteHandle, ResourceIntent, ResourceType


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> MagicMock:
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestClassifyError:
    """Tests for Exchange error text classification."""

    @pytest.mark.parametrize(
        "message,error_type",
        [
            ("The name 'Sales' is already being used.", DuplicateResourceError),
            ("The recipient \"a@contoso.com\" is already a member of the group.", DuplicateResourceError),
            ("The operation couldn't be performed because object 'x' couldn't be found", ResourceNotFoundError),
            ("A server side error has occurred because of which the operation could not be completed.", TransientDriverError),
            ("Access denied: you don't have permission", PermanentDriverError),
        ],
    )
    def test_classification(self, message: str, error_type: type) -> None:
        assert type(classify_error(message)) is error_type

    def test_ps_quote(self) -> None:
        assert ps_quote("O'Brien") == "'O''Brien'"


class TestDistributionGroupDriver:
    """Tests for the distribution-group drivers against the mock shell."""

    def test_create_and_exists(self, exchange_shell) -> None:
        driver = DistributionGroupDriver(exchange_shell)
        assert not driver.exists("All Staff")

        handle = driver.create(
            ResourceIntent(
                ResourceType.DISTRIBUTION,
                "All Staff",
                {
                    "mail_nickname": "allstaff",
                    "address": "allstaff@contoso.com",
                    "owner": "admin@contoso.com",
                    "description": "Everyone",
                },
            )
        )

        assert driver.exists("All Staff")
        group = exchange_shell.groups["all staff"]
        assert handle.id == group["Guid"]
        assert group["PrimarySmtpAddress"] == "allstaff@contoso.com"
        assert group["ManagedBy"] == "admin@contoso.com"
        assert group["Notes"] == "Everyone"
        create_script = next(s for s in exchange_shell.scripts if s.startswith("New-DistributionGroup"))
        assert "-Type Distribution" in create_script

    def test_mail_enabled_security_type(self, exchange_shell) -> None:
        driver = MailEnabledSecurityGroupDriver(exchange_shell)

        driver.create(ResourceIntent(ResourceType.MAIL_ENABLED_SECURITY, "Finance Approvers"))

        assert "-Type Security" in exchange_shell.scripts[-1]
        assert driver.exists("Finance Approvers")
        assert not DistributionGroupDriver(exchange_shell).exists("Finance Approvers")

    def test_other_group_type_is_duplicate_on_create(self, exchange_shell) -> None:
        exchange_shell.add_group("Finance", "Security")
        driver = DistributionGroupDriver(exchange_shell)

        assert not driver.exists("Finance")
        with pytest.raises(DuplicateResourceError):
            driver.create(ResourceIntent(ResourceType.DISTRIBUTION, "Finance"))

    def test_names_are_quoted(self, exchange_shell) -> None:
        driver = DistributionGroupDriver(exchange_shell)

        driver.create(ResourceIntent(ResourceType.DISTRIBUTION, "O'Brien's List"))

        assert "-Name 'O''Brien''s List'" in exchange_shell.scripts[-1]
        assert driver.exists("O'Brien's List")

    def test_remove(self, exchange_shell) -> None:
        exchange_shell.add_group("All Staff")
        driver = DistributionGroupDriver(exchange_shell)

        driver.remove("All Staff")

        assert exchange_shell.groups == {}
        assert "-BypassSecurityGroupManagerCheck" in exchange_shell.scripts[-1]

    def test_remove_missing(self, exchange_shell) -> None:
        with pytest.raises(ResourceNotFoundError):
            DistributionGroupDriver(exchange_shell).remove("All Staff")

    def test_add_member(self, exchange_shell) -> None:
        group = exchange_shell.add_group("All Staff")
        driver = DistributionGroupDriver(exchange_shell)

        driver.add_member(RemoteHandle(ResourceType.DISTRIBUTION, "All Staff", group["Guid"]), "alice@contoso.com")

        assert group["Members"] == ["alice@contoso.com"]
        with pytest.raises(DuplicateResourceError):
            driver.add_member("All Staff", "alice@contoso.com")

    def test_permanent_failure_propagates(self, exchange_shell) -> None:
        exchange_shell.fail_cmdlet("New-DistributionGroup", "Access denied")

        with pytest.raises(PermanentDriverError):
            DistributionGroupDriver(exchange_shell).create(ResourceIntent(ResourceType.DISTRIBUTION, "All Staff"))


class TestPowerShellRunner:
    """Tests for PowerShellRunner with subprocess mocked."""

    def test_script_wraps_body_with_connect_and_disconnect(self) -> None:
        runner = PowerShellRunner(ExchangeConfig(admin_upn="admin@contoso.com"))

        script = runner.build_script("Get-DistributionGroup -Identity 'x'")

        lines = script.splitlines()
        assert lines[0] == "$ErrorActionPreference = 'Stop'"
        assert "-UserPrincipalName 'admin@contoso.com'" in script
        assert "Get-DistributionGroup -Identity 'x'" in script
        assert "ConvertTo-Json" in script
        assert "Disconnect-ExchangeOnline" in lines[-2]

    def test_app_only_connection(self) -> None:
        runner = PowerShellRunner(
            ExchangeConfig(app_id="app", certificate_thumbprint="F00D", organization="contoso.onmicrosoft.com")
        )

        script = runner.build_script("Get-Mailbox")

        assert "-AppId 'app'" in script
        assert "-CertificateThumbprint 'F00D'" in script
        assert "-Organization 'contoso.onmicrosoft.com'" in script

    def test_interactive_connection(self) -> None:
        script = PowerShellRunner(ExchangeConfig()).build_script("Get-Mailbox")
        assert "Connect-ExchangeOnline -ShowBanner:$false\n" in script

    def test_run_parses_json(self) -> None:
        runner = PowerShellRunner(ExchangeConfig(shell="pwsh-preview", timeout_seconds=30))

        with patch("subprocess.run", return_value=completed(stdout='{"Name":"x","Guid":"g"}\n')) as run:
            assert runner.run("Get-DistributionGroup") == {"Name": "x", "Guid": "g"}

        command = run.call_args.args[0]
        assert command[:4] == ["pwsh-preview", "-NoProfile", "-NonInteractive", "-Command"]
        assert run.call_args.kwargs["timeout"] == 30

    def test_empty_output_is_none(self) -> None:
        with patch("subprocess.run", return_value=completed(stdout="  \n")):
            assert PowerShellRunner(ExchangeConfig()).run("Remove-DistributionGroup") is None

    def test_stderr_is_classified(self) -> None:
        failure = completed(returncode=1, stderr="|  The operation couldn't be performed because object 'x' couldn't be found")

        with patch("subprocess.run", return_value=failure):
            with pytest.raises(ResourceNotFoundError):
                PowerShellRunner(ExchangeConfig()).run("Get-DistributionGroup")

    def test_timeout_is_transient(self) -> None:
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired("pwsh", 5)):
            with pytest.raises(TransientDriverError, match="timed out"):
                PowerShellRunner(ExchangeConfig()).run("Get-DistributionGroup")

    def test_missing_shell_is_permanent(self) -> None:
        with patch("subprocess.run", side_effect=FileNotFoundError("pwsh")):
            with pytest.raises(PermanentDriverError, match="not found"):
                PowerShellRunner(ExchangeConfig()).run("Get-DistributionGroup")

    def test_non_json_output_is_permanent(self) -> None:
        with patch("subprocess.run", return_value=completed(stdout="WARNING: something")):
            with pytest.raises(PermanentDriverError, match="Unexpected Exchange output"):
                PowerShellRunner(ExchangeConfig()).run("Get-DistributionGroup")
