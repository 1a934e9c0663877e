# ===================================================================
# ERROS DE DOMÍNIO
# ===================================================================
# Cada erro carrega um tipo estável (usado pelos clientes da API) e o
# status HTTP com que é devolvido pelo errorhandler em main.py.


class ErroDominio(Exception):
    tipo = 'ERRO'
    status_http = 400

    def __init__(self, mensagem, **detalhes):
        super().__init__(mensagem)
        self.mensagem = mensagem
        self.detalhes = detalhes

    def to_dict(self):
        payload = {'error': self.mensagem, 'tipo': self.tipo}
        payload.update(self.detalhes)
        return payload


class NaoAutorizado(ErroDominio):
    tipo = 'UNAUTHORIZED'
    status_http = 401


class AcessoNegado(ErroDominio):
    tipo = 'FORBIDDEN'
    status_http = 403


class NaoEncontrado(ErroDominio):
    tipo = 'NOT_FOUND'
    status_http = 404


class ValidacaoFalhou(ErroDominio):
    tipo = 'VALIDATION_FAILED'
    status_http = 400


class QuestoesInsuficientes(ErroDominio):
    tipo = 'INSUFFICIENT_QUESTIONS'
    status_http = 422


class EstadoProvaInvalido(ErroDominio):
    tipo = 'INVALID_EXAM_STATE'
    status_http = 409


class Conflito(ErroDominio):
    tipo = 'CONFLICT'
    status_http = 409
