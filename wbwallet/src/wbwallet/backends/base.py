"""
Base wallet interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from wbcore.models import (
    AbortActionArgs,
    AbortActionResult,
    AcquireCertificateArgs,
    Certificate,
    CreateActionArgs,
    CreateActionResult,
    DiscoverByAttributesArgs,
    DiscoverByIdentityKeyArgs,
    DiscoverCertificatesResult,
    GetPublicKeyArgs,
    GetPublicKeyResult,
    InternalizeActionArgs,
    InternalizeActionResult,
    ListActionsArgs,
    ListActionsResult,
    ListCertificatesArgs,
    ListCertificatesResult,
    ListOutputsArgs,
    ListOutputsResult,
    Network,
    ProveCertificateArgs,
    ProveCertificateResult,
    RelinquishCertificateArgs,
    RelinquishCertificateResult,
    RelinquishOutputArgs,
    RelinquishOutputResult,
    RevealCounterpartyKeyLinkageArgs,
    RevealCounterpartyKeyLinkageResult,
    RevealSpecificKeyLinkageArgs,
    RevealSpecificKeyLinkageResult,
    SignActionArgs,
    SignActionResult,
)


class WalletInterface(ABC):
    """
    Abstract wallet interface.

    Implementations own key material, UTXO storage and transaction
    construction. Callers only ever see these operations and the named
    errors of ``wbcore.errors``.
    """

    @abstractmethod
    async def create_action(self, args: CreateActionArgs) -> CreateActionResult:
        """Build, and unless cooperative signing is needed sign, a new action"""

    @abstractmethod
    async def sign_action(self, args: SignActionArgs) -> SignActionResult:
        """Complete a signable action with the caller's unlocking scripts"""

    @abstractmethod
    async def abort_action(self, args: AbortActionArgs) -> AbortActionResult:
        """Abort a signable action and release its reserved inputs"""

    @abstractmethod
    async def list_actions(self, args: ListActionsArgs) -> ListActionsResult:
        """List actions matching a label filter"""

    @abstractmethod
    async def internalize_action(self, args: InternalizeActionArgs) -> InternalizeActionResult:
        """Claim outputs of a received transaction"""

    @abstractmethod
    async def list_outputs(self, args: ListOutputsArgs) -> ListOutputsResult:
        """List spendable outputs in a basket"""

    @abstractmethod
    async def relinquish_output(self, args: RelinquishOutputArgs) -> RelinquishOutputResult:
        """Stop tracking an output"""

    @abstractmethod
    async def get_public_key(self, args: GetPublicKeyArgs) -> GetPublicKeyResult:
        """Return the identity key or a derived public key"""

    @abstractmethod
    async def get_network(self) -> Network:
        """Network this wallet operates on"""

    @abstractmethod
    async def get_height(self) -> int:
        """Current chain height as seen by the wallet"""

    @abstractmethod
    async def reveal_counterparty_key_linkage(
        self, args: RevealCounterpartyKeyLinkageArgs
    ) -> RevealCounterpartyKeyLinkageResult:
        """Reveal, encrypted for a verifier, the shared secret with a counterparty"""

    @abstractmethod
    async def reveal_specific_key_linkage(
        self, args: RevealSpecificKeyLinkageArgs
    ) -> RevealSpecificKeyLinkageResult:
        """Reveal, encrypted for a verifier, the linkage of one derived key"""

    @abstractmethod
    async def list_certificates(self, args: ListCertificatesArgs) -> ListCertificatesResult:
        """List certificates held by the wallet"""

    @abstractmethod
    async def acquire_certificate(self, args: AcquireCertificateArgs) -> Certificate:
        """Store a certificate issued to this wallet"""

    @abstractmethod
    async def prove_certificate(self, args: ProveCertificateArgs) -> ProveCertificateResult:
        """Build a keyring revealing selected certificate fields to a verifier"""

    @abstractmethod
    async def relinquish_certificate(
        self, args: RelinquishCertificateArgs
    ) -> RelinquishCertificateResult:
        """Forget a certificate"""

    @abstractmethod
    async def discover_by_identity_key(
        self, args: DiscoverByIdentityKeyArgs
    ) -> DiscoverCertificatesResult:
        """Find certificates whose subject is the given identity key"""

    @abstractmethod
    async def discover_by_attributes(
        self, args: DiscoverByAttributesArgs
    ) -> DiscoverCertificatesResult:
        """Find certificates whose fields match every given attribute"""

    async def close(self) -> None:
        """Release any connection held by the wallet"""
        pass
