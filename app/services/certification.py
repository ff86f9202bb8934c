"""Certification protocol orchestration.

Drives subscription, directory linking, line registration and service
activation/termination against the line-management backend for products
that need network-operator certification. State lives in a
``CertificationSession``; each step either advances it or leaves it where it
was, so a failed later step never undoes an earlier one.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any

from app.config import settings
from app.errors import GuardViolation, RemoteCallError, StaleDataError, ValidationError
from app.models.field_work import (
    CertificationState,
    CertifyType,
    EquipmentCategory,
    TransportMode,
)
from app.schemas.field_work import (
    CertificationProfile,
    CertificationSession,
    DirectoryLinkResult,
    LineDescriptor,
    NetworkNode,
    PortInfo,
    TerminationOutcome,
    WorkContext,
)
from app.services.certification_client import CertificationClient, CertificationClientError
from app.services.equipment_allocation import AllocationStore

logger = logging.getLogger(__name__)

CallRecorder = Callable[[str, bool, str, str], None]

FIBER_NODE_COMMAND = "ftthEqipList"
FIBER_PORT_COMMAND = "ftthEqipPortList"
WIDE_BAND_NODE_COMMAND = "opticEqipList"
WIDE_BAND_PORT_COMMAND = "opticEqipPortList"
INSTALL_BUSINESS_TYPE = "01"
RESUBSCRIBE_CANCEL_TYPE = "RESUBSCRIBE"
UNLINK_MESSAGE_ID = "SMR05"
UNLINK_AP_EVENT = "AP_DEL"
UNLINK_ONT_EVENT = "ONT_DEL"
DEFAULT_ACTIVATION_REASON = "new"
CHANGE_ACTIVATION_REASON = "change"

_TERMINAL_CATEGORIES = {EquipmentCategory.wireless_router.value, EquipmentCategory.certified_ont.value}
_ACCESS_POINT_CATEGORIES = {EquipmentCategory.voip_extension.value, EquipmentCategory.certified_ap.value}

_STATE_RANK = {
    CertificationState.unsubscribed: 0,
    CertificationState.subscribed: 1,
    CertificationState.directory_linked: 2,
    CertificationState.line_registered: 3,
    CertificationState.activated: 4,
}


async def resolve_certification_profile(
    client: CertificationClient, product_code: str
) -> CertificationProfile:
    """Whether a product needs certification, and over which transport."""
    try:
        products = await client.certification_products()
    except CertificationClientError as exc:
        raise RemoteCallError(f"Certification product lookup failed: {exc}") from exc
    if product_code not in products:
        return CertificationProfile(applies=False)
    link_code = products[product_code]
    return CertificationProfile(
        applies=True,
        link_code=link_code,
        transport_mode=TransportMode.from_link_code(link_code),
    )


class CertificationOrchestrator:
    def __init__(
        self,
        context: WorkContext,
        store: AllocationStore,
        client: CertificationClient,
        session: CertificationSession | None = None,
        recorder: CallRecorder | None = None,
        success_codes: tuple[str, ...] | None = None,
    ):
        self.context = context
        self.store = store
        self.client = client
        self.session = session or CertificationSession()
        self.recorder = recorder
        self.success_codes = {
            code.upper() for code in (success_codes or settings.activation_success_codes)
        }
        self.epoch = 0
        self._in_flight: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @property
    def state(self) -> CertificationState:
        return self.session.state

    def abandon(self) -> None:
        """Forget in-flight calls; their responses will not be applied."""
        self.epoch += 1

    @asynccontextmanager
    async def _call(self, subsystem: str):
        token = self.epoch
        if self._in_flight.get(subsystem) == token:
            raise GuardViolation(f"A {subsystem} request is already in progress")
        self._in_flight[subsystem] = token
        try:
            yield token
        except CertificationClientError as exc:
            self._record(subsystem, False, "ERROR", str(exc))
            raise RemoteCallError(str(exc), details={"operation": subsystem}) from exc
        finally:
            # An abandoned call must not release the flag of a newer one.
            if self._in_flight.get(subsystem) == token:
                del self._in_flight[subsystem]

    def _discarded(self, token: int, operation: str) -> bool:
        if token != self.epoch:
            logger.info(
                "certification_response_discarded op=%s work_id=%s",
                operation,
                self.context.work_id,
            )
            return True
        return False

    def _record(self, operation: str, success: bool, code: str = "", message: str = "") -> None:
        log = logger.info if success else logger.warning
        log(
            "certification_call op=%s work_id=%s success=%s code=%s",
            operation,
            self.context.work_id,
            success,
            code,
        )
        if self.recorder is not None:
            self.recorder(operation, success, code, message)

    def _advance(self, target: CertificationState) -> None:
        current = _STATE_RANK.get(self.session.state)
        if current is None or _STATE_RANK[target] >= current:
            self.session.state = target

    def _base_payload(self) -> dict[str, Any]:
        ctx = self.context
        return {
            "CTRT_ID": ctx.contract_id,
            "CUST_ID": ctx.customer_id,
            "WRK_ID": ctx.work_id,
            "SO_ID": ctx.branch_id,
            "REG_UID": ctx.operator_id,
        }

    def _require_subscription(self) -> None:
        if not self.session.subscription_no:
            raise GuardViolation("Subscription must be registered first")

    def current_descriptor(self) -> LineDescriptor | None:
        """The cached descriptor, if it still matches the allocation set.

        Raises:
            StaleDataError: the allocations changed since the descriptor was
                queried.
        """
        descriptor = self.session.descriptor
        if descriptor is None:
            return None
        if descriptor.fingerprint != self.store.fingerprint():
            raise StaleDataError(
                "Equipment changed since the line information was queried",
                details={"fingerprint": descriptor.fingerprint},
            )
        return descriptor

    def fresh_descriptor(self) -> LineDescriptor | None:
        """Like current_descriptor, but drops a stale descriptor instead of raising."""
        try:
            return self.current_descriptor()
        except StaleDataError:
            logger.info("line_descriptor_invalidated work_id=%s", self.context.work_id)
            self.session.descriptor = None
            self.session.ports = []
            return None

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    async def subscribe(self, request_division_code: str | None = None) -> CertificationSession:
        """Register the subscription, cancelling and re-registering an existing one."""
        ctx = self.context
        async with self._call("subscription") as token:
            existing = await self.client.get_contract_line_info(ctx.contract_id)
            existing_no = (existing.subscription_no if existing else "") or self.session.subscription_no
            if existing_no:
                logger.info(
                    "resubscribe work_id=%s subscription_no=%s", ctx.work_id, existing_no
                )
                cancel = await self.client.cancel_subscription(
                    {
                        **self._base_payload(),
                        "ENTR_NO": existing_no,
                        "CANCEL_TYPE": RESUBSCRIBE_CANCEL_TYPE,
                    }
                )
                cancel_code = str(cancel.get("CODE") or cancel.get("RESULT_CD") or "")
                if cancel_code and cancel_code.upper() not in {"SUCCESS", "OK", "Y"}:
                    self._record("subscription_cancel", False, cancel_code, str(cancel.get("MESSAGE", "")))
                    raise RemoteCallError(
                        f"Cancelling subscription {existing_no} failed",
                        details={"code": cancel_code},
                    )
                self._record("subscription_cancel", True, cancel_code)

            payload = {
                "WRK_ID": ctx.work_id,
                "CTRT_ID": ctx.contract_id,
                "MRKT_CD": ctx.market_code,
                "OPERATOR_ID": ctx.operator_id,
                "REG_UID": ctx.operator_id,
            }
            if request_division_code:
                payload["RQST_DV_CD"] = request_division_code
            result = await self.client.register_subscription(payload)
            if self._discarded(token, "subscribe"):
                return self.session
            self._record("subscription", result.success, result.result_code, result.result_message)
            if not result.success:
                raise RemoteCallError(
                    result.result_message or "Subscription registration failed",
                    details={"code": result.result_code},
                )

            previous_link = self.session.directory_link
            self.session.subscription_no = result.subscription_no
            self.session.subscription_request_no = result.subscription_request_no
            self.session.directory_link = None
            self.session.descriptor = None
            self.session.network_nodes = []
            self.session.ports = []
            self.session.state = CertificationState.subscribed

        if previous_link is not None and not previous_link.empty:
            await self._unlink_directory(previous_link)
        return self.session

    async def _unlink_directory(self, link: DirectoryLinkResult) -> None:
        """Best-effort removal of the previous directory bindings."""
        data = link.data
        bindings = []
        if data.get("AP_MAC") or data.get("AP_EQT_NO"):
            bindings.append(
                (UNLINK_AP_EVENT, {"AP_MAC": data.get("AP_MAC", ""), "AP_EQT_NO": data.get("AP_EQT_NO", "")})
            )
        if data.get("ONT_MAC") or data.get("ONT_EQT_NO"):
            bindings.append(
                (UNLINK_ONT_EVENT, {"ONT_MAC": data.get("ONT_MAC", ""), "ONT_EQT_NO": data.get("ONT_EQT_NO", "")})
            )
        for event_code, fields in bindings:
            payload = {
                **self._base_payload(),
                "PROD_CD": self.context.product_code,
                "MSG_ID": UNLINK_MESSAGE_ID,
                "EVNT_CD": event_code,
                "ENTR_NO": self.session.subscription_no,
                "ENTR_RQST_NO": self.session.subscription_request_no,
                **fields,
            }
            try:
                await self.client.request_directory_event(payload)
                self._record("directory_unlink", True, event_code)
            except CertificationClientError as exc:
                logger.warning(
                    "directory_unlink_failed work_id=%s event=%s error=%s",
                    self.context.work_id,
                    event_code,
                    exc,
                )

    # ------------------------------------------------------------------
    # Directory link
    # ------------------------------------------------------------------

    def _check_directory_equipment(self) -> None:
        records = self.store.records()
        categories = {record.category_code for record in records}
        has_terminal = bool(categories & _TERMINAL_CATEGORIES)
        has_access_point = bool(categories & _ACCESS_POINT_CATEGORIES)
        mode = self.context.transport_mode
        if mode == TransportMode.fiber:
            if not has_terminal:
                raise ValidationError("Fiber service requires an optical terminal unit")
            if not has_access_point:
                raise ValidationError("Fiber service requires an access point")
        elif mode == TransportMode.wide_band and not has_access_point:
            raise ValidationError("Wide-band service requires an access point")
        if not records:
            raise ValidationError("Select the installed equipment first")
        if not self.context.contract_id:
            raise ValidationError("Contract id is missing")

    async def link_directory(self) -> DirectoryLinkResult:
        self._require_subscription()
        self._check_directory_equipment()
        async with self._call("directory") as token:
            rows = await self.client.lookup_directory(self.context.contract_id)
            if self._discarded(token, "link_directory"):
                return self.session.directory_link or DirectoryLinkResult(empty=True)
            if rows:
                link = DirectoryLinkResult(data=rows[0])
            else:
                link = DirectoryLinkResult(empty=True)
            self.session.directory_link = link
            self._record("directory_link", True, "EMPTY" if link.empty else "FOUND")
            self._advance(CertificationState.directory_linked)
            return link

    # ------------------------------------------------------------------
    # Line information
    # ------------------------------------------------------------------

    async def query_line_info(self, node_id: str | None = None) -> LineDescriptor:
        self._require_subscription()
        mode = self.context.transport_mode
        if mode == TransportMode.wide_band:
            return await self._query_fixed_port()
        if mode == TransportMode.fiber:
            return await self._query_fiber(node_id)
        raise ValidationError("This product has no line registration")

    async def _query_fixed_port(self) -> LineDescriptor:
        ctx = self.context
        session = self.session
        async with self._call("line") as token:
            info = await self.client.get_network_line(session.subscription_no, ctx.contract_id)
            if self._discarded(token, "query_line_info"):
                return session.descriptor or LineDescriptor()
            self._record("line_query", info.success, info.result_code, info.result_message)
            if not info.success:
                raise RemoteCallError(
                    info.result_message or "Line information lookup failed",
                    details={"code": info.result_code},
                )
            descriptor = LineDescriptor(
                equipment_id=info.equipment_id,
                port_no=info.port_name,
                equipment_divs="L2",
                model_name=info.model_name,
                install_place=info.install_place,
                fingerprint=self.store.fingerprint(),
            )
            session.descriptor = descriptor
            session.network_nodes = []
            session.ports = []

        await self._lookup_subscriber_equipment()
        return descriptor

    async def _query_fiber(self, node_id: str | None) -> LineDescriptor:
        ctx = self.context
        session = self.session
        async with self._call("line") as token:
            info = await self.client.get_network_line(session.subscription_no, ctx.contract_id)
            if not info.success:
                self._record("line_query", False, info.result_code, info.result_message)
                raise RemoteCallError(
                    info.result_message or "OLT lookup failed",
                    details={"code": info.result_code},
                )
            rows = await self.client.list_network_nodes(
                FIBER_NODE_COMMAND,
                session.subscription_no,
                session.subscription_request_no,
                INSTALL_BUSINESS_TYPE,
                ctx.contract_id,
            )
            nodes = [
                NetworkNode(equipment_id=row.equipment_id, name=row.name, extra=row.model_extra or {})
                for row in rows
                if row.equipment_id
            ]
            if not nodes:
                self._record("line_query", False, "NO_NODE")
                raise RemoteCallError("No network node is available for this subscriber")
            selected = node_id or nodes[0].equipment_id
            if selected not in {node.equipment_id for node in nodes}:
                raise ValidationError(f"Network node {selected} is not available")
            ports = await self._load_ports(selected)
            if self._discarded(token, "query_line_info"):
                return session.descriptor or LineDescriptor()

            self._record("line_query", True, info.result_code)
            session.network_nodes = nodes
            session.selected_node_id = selected
            session.ports = ports
            session.descriptor = LineDescriptor(
                olt_id=info.equipment_id,
                olt_port=info.port_name,
                equipment_id=selected,
                equipment_divs="OLT",
                fingerprint=self.store.fingerprint(),
            )
            descriptor = session.descriptor

        await self._lookup_subscriber_equipment()
        return descriptor

    async def _lookup_subscriber_equipment(self) -> None:
        """Best-effort subscriber equipment lookup that follows every line query."""
        session = self.session
        try:
            await self.client.get_subscriber_equipment(
                session.subscription_no,
                session.subscription_request_no,
                INSTALL_BUSINESS_TYPE,
                self.context.contract_id,
            )
        except CertificationClientError as exc:
            logger.warning(
                "subscriber_equipment_lookup_failed work_id=%s error=%s",
                self.context.work_id,
                exc,
            )

    async def _load_ports(self, node_id: str) -> list[PortInfo]:
        rows = await self.client.list_ports(FIBER_PORT_COMMAND, node_id, self.context.contract_id)
        return [
            PortInfo(port_no=row.port_no, in_use=row.in_use, subscriber_no=row.subscriber_no)
            for row in rows
            if row.port_no
        ]

    async def select_node(self, node_id: str) -> list[PortInfo]:
        descriptor = self.fresh_descriptor()
        if descriptor is None or self.context.transport_mode != TransportMode.fiber:
            raise ValidationError("Query the line information first")
        if node_id not in {node.equipment_id for node in self.session.network_nodes}:
            raise ValidationError(f"Network node {node_id} is not available")
        async with self._call("line") as token:
            ports = await self._load_ports(node_id)
            if self._discarded(token, "select_node"):
                return self.session.ports
            self.session.selected_node_id = node_id
            self.session.ports = ports
            self.session.descriptor = descriptor.model_copy(
                update={
                    "equipment_id": node_id,
                    "port_no": "",
                    "port_in_use": False,
                    "port_subscriber_no": "",
                }
            )
            return ports

    def select_port(self, port_no: str) -> LineDescriptor:
        descriptor = self.fresh_descriptor()
        if descriptor is None:
            raise ValidationError("Query the line information first")
        port = next((p for p in self.session.ports if p.port_no == port_no), None)
        if port is None:
            raise ValidationError(f"Port {port_no} is not available")
        self.session.descriptor = descriptor.model_copy(
            update={
                "port_no": port.port_no,
                "port_in_use": port.in_use,
                "port_subscriber_no": port.subscriber_no,
            }
        )
        return self.session.descriptor

    async def lookup_terminal(
        self, ont_mac: str = "", ont_serial: str = "", ap_mac: str = ""
    ) -> LineDescriptor:
        """Merge the backend's terminal record into the line descriptor."""
        descriptor = self.fresh_descriptor()
        if descriptor is None:
            raise ValidationError("Query the line information first")
        async with self._call("terminal") as token:
            info = await self.client.lookup_terminal(
                {
                    **self._base_payload(),
                    "CONT_ID": self.context.contract_id,
                    "ONT_MAC": ont_mac,
                    "ONT_SERIAL": ont_serial,
                    "AP_MAC": ap_mac,
                }
            )
            if self._discarded(token, "lookup_terminal"):
                return descriptor
            if info.error:
                self._record("terminal_lookup", False, "ERROR", info.error)
                raise RemoteCallError(info.error)
            self._record("terminal_lookup", True)
            updates = {
                "terminal_type": info.terminal_type,
                "ont_mac": (info.ont_mac or ont_mac).upper(),
                "ont_serial": (info.ont_serial or ont_serial).upper(),
                "ap_mac": info.ap_mac or ap_mac,
                "dev_id": info.dev_id,
                "ip": info.ip,
                "port": info.port,
                "max_speed": info.max_speed,
                "status": info.status,
            }
            if info.equipment_id and not descriptor.equipment_id:
                updates["equipment_id"] = info.equipment_id
            if info.port_no and not descriptor.port_no:
                updates["port_no"] = info.port_no
            self.session.descriptor = descriptor.model_copy(
                update={key: value for key, value in updates.items() if value}
            )
            return self.session.descriptor

    # ------------------------------------------------------------------
    # Line registration
    # ------------------------------------------------------------------

    async def register_line(self) -> LineDescriptor:
        descriptor = self.fresh_descriptor()
        if descriptor is None:
            raise ValidationError("Line information must be queried before registration")
        if not descriptor.port_no:
            raise ValidationError("Select a port before registering the line")

        session = self.session
        mode = self.context.transport_mode
        if mode == TransportMode.fiber:
            if descriptor.port_in_use and descriptor.port_subscriber_no != session.subscription_no:
                raise ValidationError(
                    f"Port {descriptor.port_no} is in use by another subscriber",
                    details={"subscriber_no": descriptor.port_subscriber_no},
                )
        elif mode == TransportMode.wide_band:
            async with self._call("line") as token:
                check = await self.client.check_duplicate_subscriber(
                    session.subscription_no,
                    descriptor.equipment_id,
                    descriptor.port_no,
                    self.context.contract_id,
                )
                if self._discarded(token, "register_line"):
                    return descriptor
                self._record("duplicate_check", check.success, check.result_code, check.result_message)
                if not check.success:
                    raise RemoteCallError(
                        check.result_message or "Duplicate subscriber check failed",
                        details={"code": check.result_code},
                    )
                if check.duplicate:
                    session.descriptor = None
                    raise ValidationError(
                        f"Port {descriptor.port_no} already has a subscriber",
                        details={"equipment_id": descriptor.equipment_id},
                    )
        else:
            raise ValidationError("This product has no line registration")

        self._advance(CertificationState.line_registered)
        return descriptor

    # ------------------------------------------------------------------
    # Certify type, activation, termination
    # ------------------------------------------------------------------

    async def _previously_certified(self, contract_id: str) -> bool:
        status = await self.client.certification_status(
            {**self._base_payload(), "CTRT_ID": contract_id}
        )
        certified = status.certified_for(contract_id)
        self._record("certification_status", not status.error, "Y" if certified else "N", status.error)
        return certified

    async def determine_certify_type(self) -> CertifyType:
        """Classify how the existing certification record must be treated.

        Move and change work checks the contract being replaced; other work
        checks its own contract.
        """
        ctx = self.context
        async with self._call("certify_type") as token:
            certified = await self._previously_certified(ctx.previous_contract_id or ctx.contract_id)
            branches = await self.client.eligible_branches()
            if self._discarded(token, "determine_certify_type"):
                return self.session.certify_type
            eligible = ctx.branch_id in branches
            if certified and eligible:
                certify_type = CertifyType.update
            elif eligible:
                certify_type = CertifyType.create
            elif certified:
                certify_type = CertifyType.delete
            else:
                certify_type = CertifyType.none
            self.session.previously_certified = certified
            self.session.certify_type = certify_type
            return certify_type

    async def signal_blocked(self) -> bool:
        """Certification products in eligible branches are activated by the backend, not by signal."""
        if not self.context.certification_applies:
            return False
        try:
            branches = await self.client.eligible_branches()
        except CertificationClientError as exc:
            raise RemoteCallError(f"Branch lookup failed: {exc}") from exc
        return self.context.branch_id in branches

    def _activation_payload(self, reason: str) -> dict[str, Any]:
        ctx = self.context
        descriptor = self.session.descriptor or LineDescriptor()
        payload = {
            **self._base_payload(),
            "CONT_ID": ctx.contract_id,
            "CERTIFY_TYPE": self.session.certify_type.value,
            "EQIP_ID": descriptor.equipment_id,
            "EQIP_PORT_NO": descriptor.port_no,
            "EQIP_DIVS": descriptor.equipment_divs,
            "T": descriptor.terminal_type,
            "ONT_MAC": descriptor.ont_mac,
            "ONT_SERIAL": descriptor.ont_serial,
            "AP_MAC": descriptor.ap_mac,
            "DEV_ID": descriptor.dev_id,
            "IP": descriptor.ip,
            "PORT": descriptor.port,
            "MAX_SPEED": descriptor.max_speed,
            "ST": descriptor.status,
            "SVC": ctx.product_code,
            "ADD_ON": ",".join(add_on.product_code for add_on in ctx.add_ons),
            "REASON": reason,
        }
        if self.session.certify_type == CertifyType.update and ctx.previous_contract_id:
            payload["CONT_ID_OLD"] = ctx.previous_contract_id
        return payload

    async def activate_service(self, reason: str | None = None) -> str:
        """Submit the service activation.

        Once the certify type has been determined, only create and update
        work is activated; the reason defaults from that type.
        """
        session = self.session
        if session.state not in (
            CertificationState.line_registered,
            CertificationState.activated,
        ):
            raise GuardViolation("The line must be registered before activation")
        if session.previously_certified is not None and session.certify_type not in (
            CertifyType.create,
            CertifyType.update,
        ):
            raise GuardViolation(
                "This work order does not activate a certified service",
                details={"certify_type": session.certify_type.value},
            )
        if self.fresh_descriptor() is None:
            raise ValidationError("Line information must be queried again before activation")
        if not reason:
            if session.certify_type == CertifyType.update:
                reason = CHANGE_ACTIVATION_REASON
            else:
                reason = DEFAULT_ACTIVATION_REASON
        async with self._call("activation") as token:
            result = await self.client.activate(self._activation_payload(reason))
            if self._discarded(token, "activate_service"):
                return ""
            code = result.status_code
            success = code.upper() in self.success_codes
            self._record("activation", success, code, result.status_message)
            if not success:
                raise RemoteCallError(
                    result.status_message or code,
                    details={"code": code},
                )
            self.session.state = CertificationState.activated
            return code

    async def terminate_service(self) -> TerminationOutcome:
        async with self._call("termination") as token:
            certified = await self._previously_certified(self.context.contract_id)
            if not certified:
                return TerminationOutcome(certified=False, success=False)
            result = await self.client.terminate(self._base_payload())
            if self._discarded(token, "terminate_service"):
                return TerminationOutcome(certified=True, success=False, message="discarded")
            self._record("termination", result.success, result.result_code, result.error or result.result_message)
            if result.success:
                self.session.state = CertificationState.terminated
            return TerminationOutcome(
                certified=True,
                success=result.success,
                message=result.error or result.result_message,
            )

    async def change_service(self, reason: str = "") -> TerminationOutcome:
        """Terminate the certification of the contract a product change replaces."""
        old_contract_id = self.context.previous_contract_id
        if not old_contract_id:
            raise ValidationError("The replaced contract id is missing")
        payload = {**self._base_payload(), "CTRT_ID": old_contract_id}
        if reason:
            payload["REASON"] = reason
        async with self._call("termination") as token:
            result = await self.client.terminate(payload)
            if self._discarded(token, "change_service"):
                return TerminationOutcome(certified=True, success=False, message="discarded")
            self._record("certification_change", result.success, result.result_code, result.error)
            return TerminationOutcome(
                certified=True,
                success=result.success,
                message=result.error or result.result_message,
            )
