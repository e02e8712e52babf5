"""
Escalation Module
=================

Bounded context for shipment SLA risk and contact escalation.

Responsibilities:
- Score SLA breach risk for every active shipment
- Decide when risk or a delivery issue warrants an escalation
- Walk the contact ladder until someone acknowledges
- Record acknowledgments and publish chain events
- Run the periodic risk scan and ladder timeout sweep
- Expose operator actions over HTTP
"""
