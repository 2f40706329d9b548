"""
Agendamento e regras de negócio da clínica.

Estrutura:
- db.py             : engine e sessões SQLAlchemy
- models.py         : modelos ORM e enums (consultas, médicos, pacientes, financeiro)
- business_rules.py : tabelas de configuração e cálculos puros (taxas, prioridade, expediente)
- rules_engine.py   : validação de agendamento, cancelamento e remarcação
- scheduling.py     : casos de uso de consultas, horários livres e lista de espera
- services.py       : especialidades, médicos, pacientes e notificações
- financial.py      : transações e conciliação de valores
- api_main.py       : API FastAPI
- cli.py            : operação e simulação de sistemas externos via CLI
"""
