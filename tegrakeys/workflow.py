# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later

import os
from dataclasses import dataclass, field

from .artifacts import (
    EKB_IMAGE,
    UEFI_KEYS_CONF,
    ArtifactWriter,
    FuseDescriptor,
    existing_outputs,
)
from .certs import CertificateIssuer, CertificateRecord, SignatureListGroup
from .hierarchy import KeyHierarchy, KeyHierarchyBuilder
from .keysource import KeyInventory, KeySource
from .logger import log
from .util import FatalError, PreconditionError, timestamp

INIT = "Init"
SOURCE_READY = "SourceReady"
KEYS_GENERATED = "KeysGenerated"
CERTIFICATES_ISSUED = "CertificatesIssued"
EXTERNAL_ARTIFACTS_BUILT = "ExternalArtifactsBuilt"
DONE = "Done"
ABORTED = "Aborted"

# State the run is in -> stage name reported when it fails there
FAILURE_STAGES = {
    INIT: "precondition",
    SOURCE_READY: "key generation",
    KEYS_GENERATED: "certificates",
    CERTIFICATES_ISSUED: "external artifacts",
    EXTERNAL_ARTIFACTS_BUILT: "write",
}


@dataclass
class RunContext:
    """Everything scoped to one provisioning run, passed explicitly to the
    collaborators that need it"""

    output_dir: str
    source: str
    group: SignatureListGroup = field(default_factory=SignatureListGroup)
    inventory: KeyInventory | None = None
    started_at: str = field(default_factory=timestamp)
    state: str = INIT
    hierarchy: KeyHierarchy | None = None
    certificates: list[CertificateRecord] = field(default_factory=list)
    written: list[str] = field(default_factory=list)

    @property
    def guid(self) -> str:
        return self.group.guid


class ProvisioningWorkflow:
    """Generate, encode, certify and write the complete key set.

    The run is a straight line of blocking steps. The first failure moves it to
    Aborted and propagates; nothing is retried, since HSM calls and external
    tools may have side effects. The output directory is only touched once
    every step has succeeded.
    """

    def __init__(
        self,
        source: KeySource,
        output_dir: str,
        hash_tool,
        issuer: CertificateIssuer | None = None,
        dts_generator=None,
        ekb_builder=None,
        force: bool = False,
    ):
        self.source = source
        self.output_dir = output_dir
        self.hash_tool = hash_tool
        self.issuer = issuer or CertificateIssuer()
        self.dts_generator = dts_generator
        self.ekb_builder = ekb_builder
        self.force = force
        self.context = None

    def _transition(self, state: str):
        log.print(f"State: {self.context.state} -> {state}")
        self.context.state = state

    def check_preconditions(self):
        found = existing_outputs(self.output_dir)
        if found:
            if not self.force:
                raise PreconditionError(
                    f"Key files already exist in {self.output_dir}: "
                    f"{', '.join(found)}. Use --force to overwrite them, "
                    "otherwise remove them first.",
                    stage=FAILURE_STAGES[INIT],
                )
            log.warning(f"Overwriting existing key files: {', '.join(found)}")
        tools = (
            self.hash_tool,
            self.issuer.converter,
            self.dts_generator,
            self.ekb_builder,
        )
        for tool in tools:
            if tool is not None and hasattr(tool, "check"):
                tool.check()

    def run(self) -> RunContext:
        self.context = RunContext(
            output_dir=self.output_dir,
            source=self.source.describe(),
        )
        self.context.inventory = self.source.new_inventory()
        writer = ArtifactWriter(self.output_dir)
        try:
            self.check_preconditions()
            with self.source:
                self._transition(SOURCE_READY)
                self._generate_keys()
            self._issue_certificates()
            self._build_artifacts(writer)
            self.context.written = writer.promote()
            self._transition(DONE)
        except FatalError as e:
            stage = FAILURE_STAGES.get(self.context.state)
            self._abort(writer)
            raise e.at(stage=stage)
        except BaseException:
            # the staging tree holds private keys and never outlives an unfinished run
            self._abort(writer)
            raise
        return self.context

    def _abort(self, writer: ArtifactWriter):
        self.context.state = ABORTED
        writer.discard()

    def _generate_keys(self):
        log.stage(f"Generating keys using {self.context.source}")
        builder = KeyHierarchyBuilder(self.source, self.hash_tool)
        self.context.hierarchy = builder.build(self.context.inventory)
        log.stage(finish=True)
        self._transition(KEYS_GENERATED)

    def _issue_certificates(self):
        log.stage("Issuing UEFI certificates")
        log.print(f"Signature list owner GUID: {self.context.guid}")
        self.context.certificates = self.issuer.issue_all(
            self.context.hierarchy.keys, self.context.group
        )
        log.stage(finish=True)
        self._transition(CERTIFICATES_ISSUED)

    def _build_artifacts(self, writer: ArtifactWriter):
        log.stage("Writing artifacts")
        hierarchy = self.context.hierarchy
        descriptor = FuseDescriptor.from_hierarchy(hierarchy)
        staging = writer.open()
        writer.write_keys(hierarchy)
        writer.write_uefi(self.context.certificates)
        if self.dts_generator is not None:
            self.dts_generator.generate(staging, UEFI_KEYS_CONF)
        else:
            log.note("Skipping UEFI keys device tree generation")
        if self.ekb_builder is not None:
            self.ekb_builder.build(
                staging,
                "kek_optee.key",
                "sym_t234.key",
                "sym2_t234.key",
                "auth_t234.key",
                EKB_IMAGE,
            )
        else:
            log.note("Skipping OP-TEE encrypted key blob generation")
        writer.write_fuse_descriptor(descriptor)
        if self.context.inventory is not None:
            writer.write_inventory(self.context.inventory)
        log.stage(finish=True)
        self._transition(EXTERNAL_ARTIFACTS_BUILT)


def run_workflow(source: KeySource, output_dir: str, **kwargs) -> RunContext:
    output_dir = os.path.abspath(output_dir)
    workflow = ProvisioningWorkflow(source, output_dir, **kwargs)
    context = workflow.run()
    log.print(
        f"Key generation complete, {len(context.written)} files written "
        f"to {context.output_dir}."
    )
    if context.inventory is not None:
        log.print("Key IDs are stored in nethsm_key_inventory.txt for reference.")
    return context
